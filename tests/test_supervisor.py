"""Tests for the tunnel backend process supervisor.

A small module written to a temporary directory stands in for the tunnel
backend; its behaviour is chosen with the FAKE_WISP_MODE env var.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest
import yaml
from aiohttp.test_utils import unused_port
from structlog.testing import capture_logs

import doxyedu
from doxyedu.core.config import RestartPolicy, TunnelProcessConfig
from doxyedu.server.gateway import Gateway
from doxyedu.server.supervisor import TunnelSupervisor, is_elevated, read_lines

FAKE_BACKEND = """
import os
import signal
import sys
import time

mode = os.environ.get("FAKE_WISP_MODE", "serve")

if mode == "chatty":
    print("INFO: listening on 127.0.0.1:9090", flush=True)
    print("WARNING: upstream slow", flush=True)
    print("ERROR: connection refused", flush=True)
    print("Traceback: boom", file=sys.stderr, flush=True)
    sys.exit(3)

if mode == "flood":
    print("WARNING " + "x" * 70000, flush=True)
    for n in range(20000):
        print(f"INFO: line {n}")
    print("ERROR: done", flush=True)
    sys.exit(0)

if mode == "crash":
    sys.exit(2)

if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

ready = os.environ.get("FAKE_WISP_READY")
if ready:
    with open(ready + ".tmp", "w") as f:
        f.write(str(os.getpid()))
    os.replace(ready + ".tmp", ready)
time.sleep(60)
"""


@pytest.fixture
def backend_config(tmp_path, monkeypatch):
    """Config launching the fake backend; call with the mode to run."""
    (tmp_path / "fake_wisp.py").write_text(FAKE_BACKEND)
    monkeypatch.setenv("PYTHONPATH", str(tmp_path))
    ready = tmp_path / "ready"

    def make(mode: str, **kwargs) -> TunnelProcessConfig:
        monkeypatch.setenv("FAKE_WISP_MODE", mode)
        monkeypatch.setenv("FAKE_WISP_READY", str(ready))
        kwargs.setdefault("restart_policy", RestartPolicy.NONE)
        return TunnelProcessConfig(python=sys.executable, module="fake_wisp", **kwargs)

    make.ready = ready
    return make


async def _wait_for_file(path, timeout: float = 10.0) -> None:
    async def poll():
        while not path.exists():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout)


class TestIsElevated:
    """Test stdout severity filtering."""

    def test_elevated_lines(self) -> None:
        """Test warning and error lines pass."""
        assert is_elevated("WARNING: slow upstream")
        assert is_elevated("2024-01-01 ERROR connection refused")
        assert is_elevated("[WARN] retrying")
        assert is_elevated("CRITICAL failure")

    def test_informational_lines(self) -> None:
        """Test ordinary output is dropped."""
        assert not is_elevated("INFO: listening on 127.0.0.1:9090")
        assert not is_elevated("accepted connection from 10.0.0.1")
        assert not is_elevated("WARNINGS are words too")


class TestOutput:
    """Test output capture."""

    @pytest.mark.asyncio
    async def test_stdout_filtered_stderr_surfaced(self, backend_config) -> None:
        """Test only elevated stdout lines are logged, and all of stderr."""
        supervisor = TunnelSupervisor(backend_config("chatty"))

        with capture_logs() as logs:
            await supervisor.start()
            await asyncio.wait_for(supervisor.join(), timeout=10)

        stdout_lines = [e["line"] for e in logs if e["event"] == "Tunnel backend"]
        assert stdout_lines == ["WARNING: upstream slow", "ERROR: connection refused"]
        stderr_lines = [e["line"] for e in logs if e["event"] == "Tunnel backend error"]
        assert stderr_lines == ["Traceback: boom"]
        exits = [e for e in logs if e["event"] == "Tunnel process exited"]
        assert exits[0]["exit_code"] == 3
        assert any(e["event"] == "Tunnel process not restarted" for e in logs)

    @pytest.mark.asyncio
    async def test_stdin_not_inherited(self, backend_config) -> None:
        """Test the child gets no stdin and piped output."""
        supervisor = TunnelSupervisor(backend_config("serve"))
        await supervisor.start()
        try:
            assert supervisor.process.stdin is None
            assert supervisor.process.stdout is not None
            assert supervisor.process.stderr is not None
        finally:
            await supervisor.kill()

    @pytest.mark.asyncio
    async def test_oversized_line_keeps_draining(self, backend_config) -> None:
        """Test a line past the buffer limit does not stall the pipe."""
        supervisor = TunnelSupervisor(backend_config("flood"))

        with capture_logs() as logs:
            await supervisor.start()
            await asyncio.wait_for(supervisor.join(), timeout=20)

        assert supervisor.process.returncode == 0
        stdout_lines = [e["line"] for e in logs if e["event"] == "Tunnel backend"]
        assert stdout_lines[0].startswith("WARNING xxx")
        assert stdout_lines[-1] == "ERROR: done"


class TestReadLines:
    """Test line splitting of child output."""

    @pytest.mark.asyncio
    async def test_lines_and_trailing_fragment(self) -> None:
        """Test blank lines are skipped and an unterminated tail is kept."""
        stream = asyncio.StreamReader()
        stream.feed_data(b"first\n\nsecond\r\nthird")
        stream.feed_eof()

        assert [line async for line in read_lines(stream)] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_long_line_split(self) -> None:
        """Test a line longer than the limit comes out in pieces."""
        stream = asyncio.StreamReader(limit=8)
        stream.feed_data(b"ERROR " + b"y" * 30 + b"\nshort\n")
        stream.feed_eof()

        lines = [line async for line in read_lines(stream)]

        assert lines[0].startswith("ERROR ")
        assert "".join(lines[:-1]) == "ERROR " + "y" * 30
        assert lines[-1] == "short"


class TestKill:
    """Test termination."""

    @pytest.mark.asyncio
    async def test_kill_terminates_child(self, backend_config) -> None:
        """Test kill sends SIGTERM and reaps the child."""
        supervisor = TunnelSupervisor(backend_config("serve"))
        await supervisor.start()
        assert supervisor.running
        pid = supervisor.process.pid

        await supervisor.kill()

        assert not supervisor.running
        assert supervisor.process.returncode == -signal.SIGTERM
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_kill_twice(self, backend_config) -> None:
        """Test kill is idempotent, even concurrently."""
        supervisor = TunnelSupervisor(backend_config("serve"))
        await supervisor.start()

        await asyncio.gather(supervisor.kill(), supervisor.kill())
        await supervisor.kill()

        assert supervisor.stopping
        assert not supervisor.running

    @pytest.mark.asyncio
    async def test_kill_escalates(self, backend_config) -> None:
        """Test a child ignoring SIGTERM is killed after the grace period."""
        supervisor = TunnelSupervisor(backend_config("stubborn", kill_timeout=0.2))
        await supervisor.start()
        await _wait_for_file(backend_config.ready)

        await supervisor.kill()

        assert supervisor.process.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_kill_before_start(self, backend_config) -> None:
        """Test kill without a child does nothing."""
        supervisor = TunnelSupervisor(backend_config("serve"))
        await supervisor.kill()
        assert supervisor.process is None

    @pytest.mark.asyncio
    async def test_start_is_noop_while_running(self, backend_config) -> None:
        """Test a second start keeps the existing child."""
        supervisor = TunnelSupervisor(backend_config("serve"))
        await supervisor.start()
        process = supervisor.process
        try:
            await supervisor.start()
            assert supervisor.process is process
        finally:
            await supervisor.kill()

    @pytest.mark.asyncio
    async def test_no_restart_after_kill(self, backend_config) -> None:
        """Test a deliberate stop is not treated as a crash."""
        fatal = []
        supervisor = TunnelSupervisor(
            backend_config("serve", restart_policy=RestartPolicy.FAIL_FAST),
            on_fatal=fatal.append,
        )
        await supervisor.start()

        await supervisor.kill()
        await asyncio.sleep(0.1)

        assert fatal == []
        assert supervisor.restarts == 0

    @pytest.mark.asyncio
    async def test_kill_during_spawn(self, backend_config) -> None:
        """Test a child whose spawn finishes after kill is stopped at once."""
        supervisor = TunnelSupervisor(backend_config("serve"))
        starting = asyncio.ensure_future(supervisor.start())
        await asyncio.sleep(0)

        await supervisor.kill()
        await starting

        assert supervisor.process is not None
        assert supervisor.process.returncode is not None
        assert not supervisor.running


class TestRestartPolicy:
    """Test reactions to unexpected exits."""

    @pytest.mark.asyncio
    async def test_restart_then_give_up(self, backend_config) -> None:
        """Test bounded restarts escalate to the fatal callback."""
        given_up = asyncio.Event()
        codes = []

        def on_fatal(code):
            codes.append(code)
            given_up.set()

        supervisor = TunnelSupervisor(
            backend_config(
                "crash",
                restart_policy=RestartPolicy.RESTART,
                max_restarts=2,
                restart_backoff=0.01,
            ),
            on_fatal=on_fatal,
        )
        await supervisor.start()

        await asyncio.wait_for(given_up.wait(), timeout=20)

        assert supervisor.restarts == 2
        assert codes == [2]
        await supervisor.kill()

    @pytest.mark.asyncio
    async def test_restart_recovers(self, backend_config, monkeypatch) -> None:
        """Test a crashed backend is replaced by a healthy one."""
        supervisor = TunnelSupervisor(
            backend_config("crash", restart_policy=RestartPolicy.RESTART, restart_backoff=0.5)
        )
        await supervisor.start()
        first = supervisor.process
        await asyncio.wait_for(first.wait(), timeout=10)
        monkeypatch.setenv("FAKE_WISP_MODE", "serve")

        await _wait_for_file(backend_config.ready)

        assert supervisor.restarts == 1
        assert supervisor.process is not first
        assert supervisor.running
        await supervisor.kill()

    @pytest.mark.asyncio
    async def test_fail_fast(self, backend_config) -> None:
        """Test fail-fast reports the first exit without restarting."""
        given_up = asyncio.Event()
        codes = []

        def on_fatal(code):
            codes.append(code)
            given_up.set()

        supervisor = TunnelSupervisor(
            backend_config("crash", restart_policy=RestartPolicy.FAIL_FAST),
            on_fatal=on_fatal,
        )
        await supervisor.start()

        await asyncio.wait_for(given_up.wait(), timeout=10)

        assert codes == [2]
        assert supervisor.restarts == 0

    @pytest.mark.asyncio
    async def test_spawn_failure(self) -> None:
        """Test a missing interpreter raises from start."""
        supervisor = TunnelSupervisor(TunnelProcessConfig(python="/nonexistent/python"))
        with pytest.raises(OSError):
            await supervisor.start()


class TestGatewayOwnsBackend:
    """Test the gateway's control over the real child process."""

    @pytest.mark.asyncio
    async def test_shutdown_reaps_backend(self, backend_config, gateway_config) -> None:
        """Test no backend outlives the gateway."""
        config = gateway_config.model_copy(update={"tunnel": backend_config("serve")})
        gateway = Gateway(config)
        await gateway.start()
        pid = gateway.supervisor.process.pid

        await gateway.shutdown()

        assert gateway.supervisor.process.returncode is not None
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_fatal_backend_exit_status(self, backend_config, gateway_config) -> None:
        """Test a backend that keeps dying ends the gateway with status 1."""
        tunnel = backend_config("crash", restart_policy=RestartPolicy.FAIL_FAST)
        config = gateway_config.model_copy(update={"tunnel": tunnel})
        gateway = Gateway(config)
        await gateway.start()

        assert await asyncio.wait_for(gateway.wait_closed(), timeout=10) == 1


class TestSignalShutdown:
    """Test the serve command's reaction to termination signals."""

    @pytest.mark.asyncio
    async def test_sigterm_kills_backend_and_exits_cleanly(self, backend_config, tmp_path) -> None:
        """Test SIGTERM twice stops the backend first and exits with status 0."""
        tunnel = backend_config("serve")
        config_file = tmp_path / "doxyedu.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "host": "127.0.0.1",
                    "port": unused_port(),
                    "tunnel": {
                        "python": tunnel.python,
                        "module": tunnel.module,
                        "restart_policy": "none",
                    },
                }
            )
        )
        src_dir = Path(doxyedu.__file__).resolve().parents[1]
        env = {**os.environ, "PYTHONPATH": os.pathsep.join([str(src_dir), str(tmp_path)])}

        gateway = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "doxyedu.cli", "serve", "-c", str(config_file),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            env=env,
        )
        try:
            await _wait_for_file(backend_config.ready, timeout=30)
            backend_pid = int(backend_config.ready.read_text())

            gateway.send_signal(signal.SIGTERM)
            gateway.send_signal(signal.SIGTERM)
            exit_code = await asyncio.wait_for(gateway.wait(), timeout=20)
        finally:
            if gateway.returncode is None:
                gateway.kill()
                await gateway.wait()

        assert exit_code == 0
        with pytest.raises(ProcessLookupError):
            os.kill(backend_pid, 0)
