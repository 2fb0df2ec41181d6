"""
会话调度：一次客户端调用从“已分类的命令行”到“命令退出码”的全过程。

状态机：
    IDLE -> LOCATING -> CONNECTING -> (SPAWNING) -> DISPATCHING -> COMPLETED
                  \\____________\\______________\\___________\\-> FAILED

- LOCATING：获取 output_base 锁（有界等待）；
- CONNECTING：读取 server.json，探测 pid 与 ping（失败重试一次）；启动参数指纹不一致的 server 会被替换；
- SPAWNING：没有可用 server 时启动一个，并在启动超时内等待就绪；
- DISPATCHING：发送命令并把 server 的输出帧实时写到终端，直到 exit 帧；
- 任一出口都会释放锁；总耗时只记录日志。
"""

from __future__ import annotations

import contextlib
import logging
import os
import secrets
import signal
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

from relaybuild.config.loader import ClientConfig
from relaybuild.core.errors import ClientInterrupted, RelayBuildError, ServerSpawnFailure, ServerUnreachable
from relaybuild.core.exit_codes import ExitCode
from relaybuild.options.classifier import Classification
from relaybuild.options.commands import CommandRegistry
from relaybuild.runtime.client import (
    ServerClient,
    ServerInfo,
    ServerLauncher,
    compute_fingerprint,
    pid_alive,
    server_process_matches,
)
from relaybuild.runtime.lock import OutputBaseLock
from relaybuild.runtime.paths import SessionPaths, get_session_paths
from relaybuild.workspace.locator import WorkspaceRoot

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    CONNECTING = "connecting"
    SPAWNING = "spawning"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ClientSession:
    """
    单次调用的会话状态（只在 dispatcher 内部可变）。

    字段：
    - output_base/install_base：生效的 output/install 区域（flag 覆盖优先于派生值）
    - fingerprint：server 相关 startup options 的指纹
    - server：连接到的 server（未连接时为 None）
    - command_id：发送给 server 的命令 id
    - exit_code：最终退出码（未结束时为 None）
    """

    classification: Classification
    workspace: WorkspaceRoot
    paths: SessionPaths
    install_base: Path
    server_options: Dict[str, Any]
    fingerprint: str
    started_monotonic: float
    state: DispatchState = DispatchState.IDLE
    server: Optional[ServerInfo] = None
    spawned: bool = False
    command_id: Optional[str] = None
    exit_code: Optional[int] = None

    @property
    def output_base(self) -> Path:
        return self.paths.output_base


@dataclass(frozen=True)
class DispatchSettings:
    """dispatcher 节奏参数（秒）与 server 启动方式；超时上限来自 startup flags。"""

    lock_poll_interval: float = 0.1
    probe_retry_delay: float = 0.25
    shutdown_wait: float = 5.0
    server_module: str = "relaybuild.runtime.server"
    server_engine: Optional[str] = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> "DispatchSettings":
        return cls(
            lock_poll_interval=config.session.lock_poll_interval_ms / 1000.0,
            probe_retry_delay=config.session.probe_retry_delay_ms / 1000.0,
            shutdown_wait=config.session.shutdown_wait_ms / 1000.0,
            server_module=config.server.module,
            server_engine=config.server.engine,
        )


class SessionDispatcher:
    """
    会话调度器（每次调用一个实例）。

    说明：
    - 协作对象通过工厂注入（client/launcher/lock），测试可替换为 fake；
    - 用户可见的失败一律以 `FrameworkError` 子类抛出，由 CLI 映射为退出码；
    - 命令本身的退出码原样返回。
    """

    def __init__(
        self,
        *,
        registry: CommandRegistry,
        settings: Optional[DispatchSettings] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        client_factory: Optional[Callable[[SessionPaths], ServerClient]] = None,
        launcher_factory: Optional[Callable[[SessionPaths], ServerLauncher]] = None,
        lock_factory: Callable[..., OutputBaseLock] = OutputBaseLock,
        pid_check: Callable[[int], bool] = pid_alive,
        identity_check: Optional[Callable[[ServerInfo], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry
        self._settings = settings or DispatchSettings()
        self._stdout = stdout if stdout is not None else sys.stdout
        self._stderr = stderr if stderr is not None else sys.stderr
        self._client_factory = client_factory or (lambda paths: ServerClient(paths=paths))
        self._launcher_factory = launcher_factory or (
            lambda paths: ServerLauncher(
                paths=paths,
                module=self._settings.server_module,
                engine=self._settings.server_engine,
            )
        )
        self._lock_factory = lock_factory
        self._pid_check = pid_check
        self._identity_check = identity_check or (
            lambda info: server_process_matches(info, module=self._settings.server_module)
        )
        self._clock = clock
        self._sleep = sleep
        self._transitions: List[DispatchState] = []
        self._session: Optional[ClientSession] = None

    @property
    def transitions(self) -> List[DispatchState]:
        return list(self._transitions)

    @property
    def session(self) -> Optional[ClientSession]:
        return self._session

    def _enter(self, state: DispatchState) -> None:
        self._transitions.append(state)
        if self._session is not None:
            prev = self._session.state
            self._session.state = state
            logger.debug("dispatch state %s -> %s", prev.value, state.value)

    def _new_session(self, classification: Classification, workspace: WorkspaceRoot, started: float) -> ClientSession:
        from relaybuild import __version__

        options = classification.options
        output_base = Path(options.get("output_base") or workspace.output_base)
        install_base = Path(options.get("install_base") or workspace.install_base)
        server_options = options.server_subset(self._registry.scan_schema())
        server_options["output_base"] = str(output_base)
        server_options["install_base"] = str(install_base)
        fingerprint = compute_fingerprint(
            {
                **server_options,
                "workspace": str(workspace.root) if workspace.root is not None else None,
                "version": __version__,
            }
        )
        return ClientSession(
            classification=classification,
            workspace=workspace,
            paths=get_session_paths(output_base=output_base),
            install_base=install_base,
            server_options=server_options,
            fingerprint=fingerprint,
            started_monotonic=started,
        )

    def run(self, classification: Classification, workspace: WorkspaceRoot, *, started_monotonic: Optional[float] = None) -> int:
        """
        执行一次调用。

        参数：
        - classification：已通过 `validate()` 的分类结果（命令不能为空）
        - workspace：workspace 解析结果
        - started_monotonic：客户端启动时刻（用于耗时日志）

        返回：
        - 命令退出码（server 原样回传）

        异常：
        - LockContention / ServerSpawnFailure / ServerUnreachable
        - ClientInterrupted：用户中断（锁已释放）
        """

        command = classification.command
        if command is None:
            raise ValueError("cannot dispatch an empty command line")
        started = self._clock() if started_monotonic is None else float(started_monotonic)
        session = self._new_session(classification, workspace, started)
        self._session = session
        self._transitions = []
        self._enter(DispatchState.IDLE)

        profile = self._registry.profile_for(command.name)
        options = classification.options
        try:
            self._enter(DispatchState.LOCATING)
            lock = self._lock_factory(
                session.paths.lock_path,
                block=bool(options["block_for_lock"]),
                wait_secs=float(options["lock_wait_secs"]),
                poll_interval=self._settings.lock_poll_interval,
                on_wait=self._announce_lock_wait,
            )
            with lock.holding(description={"command": command.name, "cwd": str(workspace.starting_dir)}):
                self._enter(DispatchState.CONNECTING)
                client = self._client_factory(session.paths)
                info = self._connect(client, session)
                if info is None and not profile.spawns_server:
                    logger.info("no server running for %s; nothing to do for '%s'", session.output_base, command.name)
                    session.exit_code = int(ExitCode.SUCCESS)
                    self._enter(DispatchState.COMPLETED)
                    return session.exit_code
                if info is None:
                    self._enter(DispatchState.SPAWNING)
                    info = self._spawn(client, session)
                session.server = info

                self._enter(DispatchState.DISPATCHING)
                code = self._dispatch(client, info, session)
                if command.name == "shutdown":
                    self._await_exit(info.pid, timeout_sec=float(options.get("shutdown_grace_secs") or 0))
            session.exit_code = code
            self._enter(DispatchState.COMPLETED)
            return code
        except KeyboardInterrupt:
            interrupted_in = session.state
            self._enter(DispatchState.FAILED)
            logger.info("interrupted while %s", interrupted_in.value)
            raise ClientInterrupted(state=interrupted_in.value) from None
        except RelayBuildError as e:
            self._enter(DispatchState.FAILED)
            logger.debug("dispatch failed: %s", e)
            raise
        except OSError as e:
            failed_in = session.state
            self._enter(DispatchState.FAILED)
            raise ServerSpawnFailure(
                f"Local I/O error while {failed_in.value}: {e}",
                details={"state": failed_in.value, "output_base": str(session.output_base)},
            ) from e
        finally:
            logger.info(
                "'%s' finished in %.3fs (state=%s)",
                command.name,
                self._clock() - session.started_monotonic,
                session.state.value,
            )

    def _announce_lock_wait(self, holder: Dict[str, Any]) -> None:
        who = ""
        if holder.get("pid"):
            who = f" (pid={holder['pid']})"
        self._stderr.write(f"Another command{who} is running on this output base. Waiting for it to complete...\n")
        self._stderr.flush()

    def _connect(self, client: ServerClient, session: ClientSession) -> Optional[ServerInfo]:
        """
        连接已有 server。

        返回：
        - ServerInfo：可用且指纹一致
        - None：没有 server，或旧 server 已被退役（需要 spawn）
        """

        timeout = float(session.classification.options["connect_timeout_secs"])
        for attempt in (1, 2):
            info = client.read_server_info()
            if info is None:
                logger.debug("no server record under %s", session.paths.server_dir)
                return None
            if not self._pid_check(info.pid):
                logger.info("stale server record (pid=%s not running)", info.pid)
                return None
            if not self._identity_check(info):
                logger.warning("stale server record: pid=%s now belongs to another process", info.pid)
                self._launcher_factory(session.paths).cleanup_stale_files()
                return None
            try:
                client.ping(info, timeout_sec=timeout)
            except ServerUnreachable as e:
                if attempt == 1:
                    logger.info("server pid=%s did not answer (%s); retrying once", info.pid, e.message)
                    self._sleep(self._settings.probe_retry_delay)
                    continue
                logger.warning("server pid=%s unresponsive; replacing it", info.pid)
                self._retire(client, info, polite=False)
                return None
            if info.fingerprint != session.fingerprint:
                logger.info("server pid=%s was started with different startup options; restarting", info.pid)
                self._retire(client, info, polite=True)
                return None
            logger.debug("connected to server pid=%s", info.pid)
            return info
        return None

    def _await_exit(self, pid: int, *, timeout_sec: float) -> bool:
        deadline = self._clock() + max(0.0, timeout_sec)
        while self._pid_check(pid):
            if self._clock() >= deadline:
                return False
            self._sleep(0.05)
        return True

    def _retire(self, client: ServerClient, info: ServerInfo, *, polite: bool) -> None:
        """让旧 server 退出：先 shutdown RPC，超时后 SIGTERM，再 SIGKILL。"""

        if polite:
            try:
                client.shutdown(info)
            except ServerUnreachable:
                logger.warning("server pid=%s refused shutdown", info.pid, exc_info=True)
        if self._await_exit(info.pid, timeout_sec=self._settings.shutdown_wait if polite else 0):
            return
        for sig in (signal.SIGTERM, signal.SIGKILL):
            if not self._identity_check(info):
                logger.warning("pid=%s is no longer the server; not signalling it", info.pid)
                return
            logger.info("sending %s to server pid=%s", sig.name, info.pid)
            with contextlib.suppress(ProcessLookupError):
                os.kill(info.pid, sig)
            if self._await_exit(info.pid, timeout_sec=self._settings.shutdown_wait):
                return
        logger.warning("server pid=%s is still alive after SIGKILL", info.pid)

    def _spawn(self, client: ServerClient, session: ClientSession) -> ServerInfo:
        options = session.classification.options
        launcher = self._launcher_factory(session.paths)
        session.install_base.mkdir(parents=True, exist_ok=True)
        proc = launcher.spawn(
            workspace_root=session.workspace.root,
            install_base=session.install_base,
            max_idle_secs=int(options["max_idle_secs"]),
            fingerprint=session.fingerprint,
            server_args=tuple(options["server_args"]),
        )
        session.spawned = True
        try:
            info = launcher.wait_until_ready(
                proc,
                client,
                timeout_sec=float(options["local_startup_timeout_secs"]),
                clock=self._clock,
            )
        except KeyboardInterrupt:
            launcher.terminate(proc)
            raise
        logger.info("server pid=%s ready", info.pid)
        return info

    def _dispatch(self, client: ServerClient, info: ServerInfo, session: ClientSession) -> int:
        command = session.classification.command
        if command is None:
            raise ValueError("cannot dispatch an empty command line")
        cid = secrets.token_hex(8)
        session.command_id = cid
        params = {
            "command_id": cid,
            "command": command.name,
            "arguments": list(command.arguments),
            "cwd": str(session.workspace.starting_dir),
            "startup_options": dict(session.server_options),
        }
        frames = client.stream(info, method="run", params=params, timeout_sec=None)
        try:
            for frame in frames:
                kind = frame.get("type")
                if kind == "stdout":
                    self._stdout.write(str(frame.get("data") or ""))
                    self._stdout.flush()
                elif kind == "stderr":
                    self._stderr.write(str(frame.get("data") or ""))
                    self._stderr.flush()
                elif kind == "exit":
                    return int(frame.get("code", ExitCode.SERVER_FAILURE))
                else:
                    logger.debug("ignoring unknown frame type %r", kind)
        except KeyboardInterrupt:
            logger.info("cancelling command %s", cid)
            try:
                client.cancel(info, command_id=cid)
            except ServerUnreachable:
                logger.warning("cancel for %s was not delivered", cid, exc_info=True)
            raise
        finally:
            close = getattr(frames, "close", None)
            if close is not None:
                close()
        raise ServerUnreachable(
            "Server connection closed before the command finished.",
            details={"pid": info.pid, "command": command.name, "command_id": cid},
        )


__all__ = ["ClientSession", "DispatchSettings", "DispatchState", "SessionDispatcher"]
