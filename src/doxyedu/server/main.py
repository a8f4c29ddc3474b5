"""DoxyEdu gateway - process entry point."""

from __future__ import annotations

import asyncio
import signal
import sys

from rich.console import Console

from doxyedu.core.config import GatewayConfig
from doxyedu.errors import GatewayBindError
from doxyedu.server.gateway import Gateway, GatewayState

console = Console()


async def run_gateway(gateway: Gateway) -> int:
    """Start the gateway and wait for it to shut down. Returns the exit status."""
    try:
        await gateway.start()
    except GatewayBindError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    if gateway.state is GatewayState.SERVING:
        console.print("Listening on:", style="green")
        for url in gateway.listen_urls():
            console.print(f"\t{url}")

    return await gateway.wait_closed()


def run_with_signal_handling(config: GatewayConfig) -> int:
    """Run the gateway until SIGINT/SIGTERM; repeated signals are ignored."""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    gateway = Gateway(config)
    main_task = loop.create_task(run_gateway(gateway))

    def request_shutdown() -> None:
        if gateway.request_shutdown() is not None:
            console.print("\n[yellow]Shutting down DoxyEdu Web Proxy...[/yellow]")

    def signal_handler(sig: int, frame: object) -> None:
        loop.call_soon_threadsafe(request_shutdown)

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        return loop.run_until_complete(main_task)
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
