"""Supervision of the tunnel backend child process.

The backend runs as a separate interpreter bound to a loopback port. Its
output is captured rather than inherited: stdout is filtered down to
warnings and errors, stderr is always surfaced. What happens after an
unexpected exit is governed by ``RestartPolicy``.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import AsyncIterator, Callable

import structlog

from doxyedu.core.config import RestartPolicy, TunnelProcessConfig

logger = structlog.get_logger()

_ELEVATED = re.compile(r"\b(WARN(?:ING)?|ERROR|CRITICAL|FATAL)\b")


def is_elevated(line: str) -> bool:
    """Whether a stdout line reports something above informational level."""
    return _ELEVATED.search(line) is not None


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield non-empty decoded lines until EOF.

    A line longer than the stream's buffer limit comes out in limit-sized
    pieces instead of stopping the reader, so the pipe is always drained.
    """
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            raw = e.partial
            if not raw:
                return
        except asyncio.LimitOverrunError as e:
            raw = await stream.read(e.consumed)
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            yield line


class TunnelSupervisor:
    """Owns the tunnel backend process for the lifetime of the gateway."""

    def __init__(
        self,
        config: TunnelProcessConfig,
        on_fatal: Callable[[int | None], None] | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            config: Launch and restart settings.
            on_fatal: Called once, synchronously, when the backend is given up
                on. Receives the last exit code.
        """
        self.config = config
        self._on_fatal = on_fatal
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False
        self._restarts = 0
        self._kill_task: asyncio.Future | None = None

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def restarts(self) -> int:
        return self._restarts

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def start(self) -> None:
        """Spawn the backend. Calling it while a child is alive is a no-op."""
        if self.running:
            return
        self._stopping = False
        self._kill_task = None
        await self._spawn()

    async def _spawn(self) -> None:
        command = self.config.command()
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        if self._stopping:
            logger.info("Tunnel process spawned after kill, stopping it", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            return
        logger.info(
            "Tunnel process started",
            pid=process.pid,
            host=self.config.host,
            port=self.config.port,
            threads=self.config.threads,
        )
        self._track(self._pump_stdout(process.stdout))
        self._track(self._pump_stderr(process.stderr))
        self._track(self._watch(process))

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump_stdout(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        async for line in read_lines(stream):
            if is_elevated(line):
                logger.warning("Tunnel backend", line=line)

    async def _pump_stderr(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        async for line in read_lines(stream):
            logger.error("Tunnel backend error", line=line)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        exit_code = await process.wait()
        logger.info("Tunnel process exited", pid=process.pid, exit_code=exit_code)
        if self._stopping:
            return
        await self._recover(exit_code)

    async def _recover(self, exit_code: int | None) -> None:
        policy = self.config.restart_policy
        while not self._stopping:
            if policy is RestartPolicy.NONE:
                logger.warning("Tunnel process not restarted", exit_code=exit_code)
                return

            if policy is RestartPolicy.RESTART and self._restarts < self.config.max_restarts:
                delay = min(
                    self.config.restart_backoff * (2 ** self._restarts),
                    self.config.max_backoff,
                )
                self._restarts += 1
                logger.warning(
                    "Restarting tunnel process",
                    attempt=self._restarts,
                    max_restarts=self.config.max_restarts,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                if self._stopping:
                    return
                try:
                    await self._spawn()
                    return
                except OSError as e:
                    logger.error("Tunnel process restart failed", error=str(e))
                    continue

            logger.error("Tunnel backend unavailable, giving up", exit_code=exit_code)
            if self._on_fatal is not None:
                self._on_fatal(exit_code)
            return

    async def join(self) -> None:
        """Wait until the child's output is drained and its exit handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def kill(self) -> None:
        """Terminate the child and stop supervising it. Safe to call twice."""
        if self._kill_task is None:
            self._stopping = True
            self._kill_task = asyncio.ensure_future(self._terminate())
        await asyncio.shield(self._kill_task)

    async def _terminate(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            logger.info("Stopping tunnel process", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.kill_timeout)
            except TimeoutError:
                logger.warning("Tunnel process ignored SIGTERM, killing", pid=process.pid)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
