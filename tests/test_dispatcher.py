from __future__ import annotations

import contextlib
import io
import json
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psutil
import pytest

from relaybuild.core.errors import ClientInterrupted, LockContention, ServerSpawnFailure, ServerUnreachable
from relaybuild.options.classifier import Classification, classify
from relaybuild.options.commands import default_command_registry
from relaybuild.runtime.client import ServerInfo, server_process_matches
from relaybuild.runtime.dispatcher import DispatchSettings, DispatchState, SessionDispatcher
from relaybuild.runtime.lock import OutputBaseLock
from relaybuild.runtime.paths import get_session_paths
from relaybuild.workspace.locator import WorkspaceLocator, WorkspaceRoot

pytestmark = pytest.mark.skipif(os.name == "nt", reason="fcntl locks are POSIX only")

S = DispatchState


class FakeServer:
    """内存中的 server：记录收到的请求，并按脚本回放输出帧。"""

    def __init__(self) -> None:
        self.info: Optional[ServerInfo] = None
        self.frames: List[Dict[str, Any]] = [{"type": "exit", "code": 0}]
        self.ping_failures = 0
        self.alive = True
        self.requests: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.shutdowns = 0
        self.interrupt_after: Optional[int] = None
        self.clients = 0
        self.pid_reused = False

    def pid_check(self, pid: int) -> bool:
        return self.alive and self.info is not None and pid == self.info.pid

    def identity_check(self, info: ServerInfo) -> bool:
        return not self.pid_reused


class FakeClient:
    def __init__(self, server: FakeServer) -> None:
        self._server = server
        server.clients += 1

    def read_server_info(self) -> Optional[ServerInfo]:
        return self._server.info

    def ping(self, info: ServerInfo, *, timeout_sec: float) -> Dict[str, Any]:
        if self._server.ping_failures > 0:
            self._server.ping_failures -= 1
            raise ServerUnreachable("ping timed out")
        return {"pong": True}

    def stream(self, info: ServerInfo, *, method: str, params=None, timeout_sec=None) -> Iterator[Dict[str, Any]]:
        self._server.requests.append({"method": method, "params": params})
        for i, frame in enumerate(self._server.frames):
            if self._server.interrupt_after is not None and i == self._server.interrupt_after:
                raise KeyboardInterrupt
            yield frame

    def cancel(self, info: ServerInfo, *, command_id: str, timeout_sec: float = 2.0) -> Dict[str, Any]:
        self._server.cancelled.append(command_id)
        return {"cancelled": True}

    def shutdown(self, info: ServerInfo, *, timeout_sec: float = 2.0) -> Dict[str, Any]:
        self._server.shutdowns += 1
        self._server.alive = False
        return {}


class FakeProc:
    pid = 4242


class FakeLauncher:
    def __init__(self, server: FakeServer, *, fail: bool = False) -> None:
        self._server = server
        self._fail = fail
        self.spawned: List[Dict[str, Any]] = []
        self.terminated = 0
        self.cleanups = 0
        self.interrupt_ready = False

    def cleanup_stale_files(self) -> None:
        self.cleanups += 1

    def spawn(self, **kwargs: Any) -> FakeProc:
        self.spawned.append(kwargs)
        return FakeProc()

    def wait_until_ready(self, proc, client, *, timeout_sec: float, clock=None) -> ServerInfo:
        if self.interrupt_ready:
            raise KeyboardInterrupt
        if self._fail:
            self.terminated += 1
            raise ServerSpawnFailure(f"Server did not become ready within {timeout_sec:g}s.")
        self._server.alive = True
        self._server.info = ServerInfo(
            pid=proc.pid,
            secret="s",
            socket_path="/tmp/fake.sock",
            created_at_ms=1,
            fingerprint=self.spawned[-1]["fingerprint"],
        )
        return self._server.info

    def terminate(self, proc) -> None:
        self.terminated += 1


def _workspace(tmp_path: Path) -> WorkspaceRoot:
    ws = tmp_path / "ws"
    ws.mkdir(exist_ok=True)
    (ws / "WORKSPACE").write_text("", encoding="utf-8")
    return WorkspaceLocator(output_user_root=tmp_path / "out", user="tester", version="0.0-test").resolve(ws)


def _classify(ws: WorkspaceRoot, argv: List[str]) -> Classification:
    return classify(argv, default_command_registry().scan_schema(), ws)


def _dispatcher(server: FakeServer, launcher: FakeLauncher, **kwargs: Any) -> SessionDispatcher:
    kwargs.setdefault("stdout", io.StringIO())
    kwargs.setdefault("stderr", io.StringIO())
    kwargs.setdefault("identity_check", server.identity_check)
    return SessionDispatcher(
        registry=default_command_registry(),
        settings=DispatchSettings(lock_poll_interval=0.01, probe_retry_delay=0.0, shutdown_wait=0.1),
        client_factory=lambda _paths: FakeClient(server),
        launcher_factory=lambda _paths: launcher,
        pid_check=server.pid_check,
        sleep=lambda _s: None,
        **kwargs,
    )


def _lock_is_free(output_base: Path) -> bool:
    try:
        with OutputBaseLock(get_session_paths(output_base=output_base).lock_path, block=False):
            return True
    except LockContention:
        return False


def test_build_scenario_spawns_server_and_returns_its_code(tmp_path: Path) -> None:
    """argv = --output_base=<o> build //pkg:target，无 server：锁 -> 探测失败 -> 拉起 -> 转发 -> 透传退出码。"""

    ws = _workspace(tmp_path)
    ob = tmp_path / "o"
    server = FakeServer()
    server.frames = [
        {"type": "stdout", "data": "building //pkg:target\n"},
        {"type": "stderr", "data": "INFO: 1 action\n"},
        {"type": "exit", "code": 3},
    ]
    launcher = FakeLauncher(server)
    out, err = io.StringIO(), io.StringIO()
    d = _dispatcher(server, launcher, stdout=out, stderr=err)

    code = d.run(_classify(ws, [f"--output_base={ob}", "build", "//pkg:target"]), ws)

    assert code == 3
    assert d.transitions == [S.IDLE, S.LOCATING, S.CONNECTING, S.SPAWNING, S.DISPATCHING, S.COMPLETED]
    assert out.getvalue() == "building //pkg:target\n"
    assert err.getvalue() == "INFO: 1 action\n"
    assert len(launcher.spawned) == 1
    assert launcher.spawned[0]["workspace_root"] == ws.root

    (req,) = server.requests
    assert req["method"] == "run"
    assert req["params"]["command"] == "build"
    assert req["params"]["arguments"] == ["//pkg:target"]
    assert req["params"]["cwd"] == str(ws.starting_dir)
    assert req["params"]["startup_options"]["output_base"] == str(ob.resolve())
    assert d.session is not None and d.session.exit_code == 3
    assert d.session.output_base == ob.resolve()
    assert _lock_is_free(ob)


def test_reuses_running_server_with_same_fingerprint(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)

    assert _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws) == 0
    d2 = _dispatcher(server, launcher)
    assert d2.run(_classify(ws, ["build"]), ws) == 0

    assert len(launcher.spawned) == 1
    assert S.SPAWNING not in d2.transitions


def test_changed_server_options_restart_the_server(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws)

    d = _dispatcher(server, launcher)
    d.run(_classify(ws, ["--max_idle_secs=5", "build"]), ws)

    assert server.shutdowns == 1
    assert len(launcher.spawned) == 2
    assert launcher.spawned[1]["max_idle_secs"] == 5
    assert launcher.spawned[0]["fingerprint"] != launcher.spawned[1]["fingerprint"]
    assert S.SPAWNING in d.transitions


def test_client_only_options_do_not_restart_the_server(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws)
    _dispatcher(server, launcher).run(_classify(ws, ["--client_debug", "--lock_wait_secs=1", "build"]), ws)

    assert server.shutdowns == 0
    assert len(launcher.spawned) == 1


def test_probe_is_retried_once(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws)

    server.ping_failures = 1
    d = _dispatcher(server, launcher)
    assert d.run(_classify(ws, ["build"]), ws) == 0
    assert len(launcher.spawned) == 1


def test_spawn_timeout_fails_and_releases_lock(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    failing = FakeLauncher(server, fail=True)
    d = _dispatcher(server, failing)

    with pytest.raises(ServerSpawnFailure) as ei:
        d.run(_classify(ws, ["build", "//a"]), ws)

    assert ei.value.exit_code == 37
    assert d.transitions[-1] == S.FAILED
    assert S.DISPATCHING not in d.transitions
    assert _lock_is_free(ws.output_base)

    # 之后的调用无需人工清理即可成功
    assert _dispatcher(server, FakeLauncher(server)).run(_classify(ws, ["build", "//a"]), ws) == 0


def test_lock_contention_without_blocking(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    holder = OutputBaseLock(get_session_paths(output_base=ws.output_base).lock_path)
    holder.acquire(description={"command": "test"})
    try:
        d = _dispatcher(server, FakeLauncher(server))
        with pytest.raises(LockContention) as ei:
            d.run(_classify(ws, ["--noblock_for_lock", "build"]), ws)
    finally:
        holder.release()

    assert ei.value.exit_code == 9
    assert ei.value.details["holder"]["command"] == "test"
    assert d.transitions == [S.IDLE, S.LOCATING, S.FAILED]
    assert server.clients == 0


def test_zero_lock_wait_fails_fast(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    holder = OutputBaseLock(get_session_paths(output_base=ws.output_base).lock_path)
    holder.acquire(description={"command": "test"})
    err = io.StringIO()
    try:
        d = _dispatcher(server, FakeLauncher(server), stderr=err)
        with pytest.raises(LockContention):
            d.run(_classify(ws, ["--lock_wait_secs=0", "build"]), ws)
    finally:
        holder.release()

    assert server.requests == []


def test_shutdown_without_server_does_not_spawn(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    d = _dispatcher(server, launcher)

    assert d.run(_classify(ws, ["shutdown"]), ws) == 0

    assert launcher.spawned == []
    assert server.requests == []
    assert d.transitions == [S.IDLE, S.LOCATING, S.CONNECTING, S.COMPLETED]


def test_shutdown_waits_for_server_exit(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws)

    checks: List[int] = []

    def _pid_check(pid: int) -> bool:
        checks.append(pid)
        # 第一次为 CONNECTING 的存活检查；随后 server 已退出
        return len(checks) <= 1

    d = SessionDispatcher(
        registry=default_command_registry(),
        settings=DispatchSettings(probe_retry_delay=0.0, shutdown_wait=0.1),
        stdout=io.StringIO(),
        stderr=io.StringIO(),
        client_factory=lambda _p: FakeClient(server),
        launcher_factory=lambda _p: launcher,
        pid_check=_pid_check,
        identity_check=server.identity_check,
        sleep=lambda _s: None,
    )
    assert d.run(_classify(ws, ["--shutdown_grace_secs=1", "shutdown"]), ws) == 0
    assert server.requests[-1]["params"]["command"] == "shutdown"
    assert len(checks) == 2


def test_interrupt_during_dispatch_sends_cancel(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    server.frames = [{"type": "stdout", "data": "working\n"}, {"type": "exit", "code": 0}]
    server.interrupt_after = 1
    d = _dispatcher(server, FakeLauncher(server))

    with pytest.raises(ClientInterrupted) as ei:
        d.run(_classify(ws, ["test", "//a:t"]), ws)

    assert ei.value.exit_code == 8
    assert ei.value.details["state"] == "dispatching"
    assert d.session is not None
    assert server.cancelled == [d.session.command_id]
    assert _lock_is_free(ws.output_base)


def test_stream_without_exit_frame_is_server_failure(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    server.frames = [{"type": "stdout", "data": "partial"}]
    d = _dispatcher(server, FakeLauncher(server))

    with pytest.raises(ServerUnreachable) as ei:
        d.run(_classify(ws, ["build"]), ws)

    assert ei.value.exit_code == 37
    assert d.transitions[-2:] == [S.DISPATCHING, S.FAILED]


def test_empty_command_is_not_dispatchable(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    with pytest.raises(ValueError):
        _dispatcher(server, FakeLauncher(server)).run(_classify(ws, []), ws)


def test_forwarding_an_empty_command_raises_value_error(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    d = _dispatcher(server, FakeLauncher(server))
    session = d._new_session(_classify(ws, []), ws, 0.0)
    info = ServerInfo(pid=4242, secret="s", socket_path="/tmp/fake.sock", created_at_ms=1)

    with pytest.raises(ValueError, match="empty command line"):
        d._dispatch(FakeClient(server), info, session)
    assert server.requests == []


def test_interrupt_while_waiting_for_lock(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()

    class InterruptedLock(OutputBaseLock):
        def acquire(self, *, description=None) -> None:
            raise KeyboardInterrupt

    d = _dispatcher(server, FakeLauncher(server), lock_factory=InterruptedLock)

    with pytest.raises(ClientInterrupted) as ei:
        d.run(_classify(ws, ["build"]), ws)

    assert ei.value.exit_code == 8
    assert ei.value.details["state"] == "locating"
    assert d.transitions == [S.IDLE, S.LOCATING, S.FAILED]
    assert server.clients == 0


def test_interrupt_while_spawning_terminates_new_server(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    launcher.interrupt_ready = True
    d = _dispatcher(server, launcher)

    with pytest.raises(ClientInterrupted) as ei:
        d.run(_classify(ws, ["build"]), ws)

    assert ei.value.details["state"] == "spawning"
    assert launcher.terminated == 1
    assert server.requests == []
    assert _lock_is_free(ws.output_base)


def test_uncreatable_output_base_is_server_failure(tmp_path: Path) -> None:
    ws = _workspace(tmp_path)
    blocker = tmp_path / "plain-file"
    blocker.write_text("", encoding="utf-8")
    server = FakeServer()
    d = _dispatcher(server, FakeLauncher(server))

    with pytest.raises(ServerSpawnFailure) as ei:
        d.run(_classify(ws, [f"--output_base={blocker / 'ob'}", "build"]), ws)

    assert ei.value.exit_code == 37
    assert ei.value.details["state"] == "locating"
    assert d.transitions[-1] == S.FAILED
    assert server.clients == 0


def test_reused_pid_is_never_signalled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """server.json 的 pid 已被其它进程复用：只清理残留文件并重新拉起，不发信号。"""

    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws)

    kills: List[Any] = []
    monkeypatch.setattr(os, "kill", lambda pid, sig: kills.append((pid, sig)))
    server.pid_reused = True
    server.ping_failures = 2

    d = _dispatcher(server, launcher)
    assert d.run(_classify(ws, ["build"]), ws) == 0

    assert kills == []
    assert launcher.cleanups == 1
    assert len(launcher.spawned) == 2
    assert server.shutdowns == 0


def test_unresponsive_server_is_not_killed_once_pid_changes_owner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ws = _workspace(tmp_path)
    server = FakeServer()
    launcher = FakeLauncher(server)
    _dispatcher(server, launcher).run(_classify(ws, ["build"]), ws)

    owners = iter([True, True, False])
    kills: List[Any] = []
    monkeypatch.setattr(os, "kill", lambda pid, sig: kills.append((pid, sig)))
    server.ping_failures = 2

    d = _dispatcher(server, launcher, identity_check=lambda _info: next(owners, False))
    assert d.run(_classify(ws, ["build"]), ws) == 0

    assert kills == []
    assert len(launcher.spawned) == 2


def _start_sleeper(*extra: str) -> subprocess.Popen:
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)", *extra])
    deadline = time.monotonic() + 10.0
    while time.monotonic() < deadline:
        with contextlib.suppress(psutil.Error):
            if "time.sleep" in " ".join(psutil.Process(proc.pid).cmdline()):
                return proc
        time.sleep(0.02)
    proc.kill()
    raise AssertionError("sleeper did not start")


def _stop(proc: subprocess.Popen) -> None:
    proc.kill()
    proc.wait(5.0)


def test_server_process_matches_checks_cmdline_and_start_time() -> None:
    proc = _start_sleeper("relaybuild.runtime.server")
    try:
        now_ms = int(time.time() * 1000)
        info = ServerInfo(pid=proc.pid, secret="s", socket_path="/nowhere.sock", created_at_ms=now_ms)

        assert server_process_matches(info, module="relaybuild.runtime.server")
        assert not server_process_matches(info, module="other.module")
        earlier = ServerInfo(pid=proc.pid, secret="s", socket_path="/nowhere.sock", created_at_ms=now_ms - 60_000)
        assert not server_process_matches(earlier, module="relaybuild.runtime.server")
    finally:
        _stop(proc)


def test_stale_record_pointing_at_unrelated_process(tmp_path: Path) -> None:
    """真实进程：server.json 指向一个无关的存活进程，socket 已不存在。"""

    ws = _workspace(tmp_path)
    paths = get_session_paths(output_base=ws.output_base)
    paths.server_dir.mkdir(parents=True)
    proc = _start_sleeper()
    try:
        paths.server_info_path.write_text(
            json.dumps(
                {
                    "pid": proc.pid,
                    "secret": "s",
                    "socket_path": str(tmp_path / "dead.sock"),
                    "created_at_ms": int(time.time() * 1000) - 60_000,
                }
            ),
            encoding="utf-8",
        )
        d = SessionDispatcher(
            registry=default_command_registry(),
            settings=DispatchSettings(probe_retry_delay=0.0, shutdown_wait=0.1),
            stdout=io.StringIO(),
            stderr=io.StringIO(),
        )

        assert d.run(_classify(ws, ["shutdown"]), ws) == 0

        assert proc.poll() is None
        assert not paths.server_info_path.exists()
        assert d.transitions == [S.IDLE, S.LOCATING, S.CONNECTING, S.COMPLETED]
    finally:
        _stop(proc)
