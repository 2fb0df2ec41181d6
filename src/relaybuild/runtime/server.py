from __future__ import annotations

import contextlib
import json
import logging
import os
import queue
import secrets
import socket
import stat
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from relaybuild.core.exit_codes import ExitCode
from relaybuild.runtime.client import (
    ENGINE_ENV,
    FINGERPRINT_ENV,
    INSTALL_BASE_ENV,
    MAX_IDLE_ENV,
    OUTPUT_BASE_ENV,
    SECRET_ENV,
    WORKSPACE_ENV,
)
from relaybuild.runtime.engine import CommandContext, CommandEngine, load_engine
from relaybuild.runtime.paths import get_session_paths

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class _RunningCommand:
    """server 内部运行中命令状态。"""

    command_id: str
    name: str
    started_at_ms: int
    cancel_event: threading.Event = field(default_factory=threading.Event)


class SessionServer:
    """
    output_base 级单例 server（Unix socket；一次连接一个请求，响应为 NDJSON 帧）。

    行为：
    - 启动后原子写入 `<output_base>/server/server.json`（pid/secret/socket_path/fingerprint）；
    - 每个连接一个线程；`run` 在工作线程中执行命令，输出以 `stdout`/`stderr` 帧流式返回，最后一帧为 `exit`；
    - 没有运行中命令且空闲超过 `max_idle_secs` 时自动退出；退出时删除 socket 与 server.json。
    """

    def __init__(
        self,
        *,
        output_base: Path,
        secret: str,
        workspace_root: Optional[Path] = None,
        install_base: Optional[Path] = None,
        max_idle_secs: int = 10800,
        fingerprint: str = "",
        engine: Optional[CommandEngine] = None,
    ) -> None:
        """
        参数：
        - output_base：output 区域根目录（server 状态位于其下 `server/`）
        - secret：本地鉴权 secret（客户端需携带；仅本机使用）
        - workspace_root/install_base：用于 `info` 输出
        - max_idle_secs：空闲退出阈值（秒）
        - fingerprint：启动参数指纹（客户端据此判断是否需要重启）
        - engine：命令引擎；默认 `BuiltinEngine`
        """

        self._paths = get_session_paths(output_base=Path(output_base))
        self._secret = str(secret or "")
        self._workspace_root = Path(workspace_root).resolve() if workspace_root else None
        self._install_base = Path(install_base).resolve() if install_base else None
        self._max_idle_secs = int(max_idle_secs)
        self._fingerprint = str(fingerprint or "")
        self._engine: CommandEngine = engine if engine is not None else load_engine(None)

        self._created_at_ms = int(time.time() * 1000)
        self._started_monotonic = time.monotonic()
        self._shutdown = threading.Event()
        self._last_activity = time.monotonic()
        self._commands_lock = threading.Lock()
        self._commands: Dict[str, _RunningCommand] = {}

    @property
    def paths(self):
        return self._paths

    def request_shutdown(self) -> None:
        """请求退出（运行中命令结束后 accept loop 退出）。"""

        logger.info("shutdown requested")
        self._shutdown.set()

    def _server_info_dict(self) -> Dict[str, Any]:
        from relaybuild import __version__

        return {
            "pid": os.getpid(),
            "secret": self._secret,
            "socket_path": str(self._paths.socket_path),
            "created_at_ms": int(self._created_at_ms),
            "fingerprint": self._fingerprint,
            "version": __version__,
            "output_base": str(self._paths.output_base),
        }

    def _write_server_info(self) -> None:
        """原子写入 `server.json`（临时文件 + replace）。"""

        self._paths.server_dir.mkdir(parents=True, exist_ok=True)
        p = self._paths.server_info_path
        tmp = p.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._server_info_dict(), ensure_ascii=False), encoding="utf-8")
        os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)
        tmp.replace(p)

    def _cleanup_files(self) -> None:
        """清理 socket 与 server.json（best-effort；只删属于自己的 server.json）。"""

        with contextlib.suppress(OSError):
            if self._paths.socket_path.exists():
                self._paths.socket_path.unlink()
        with contextlib.suppress(OSError, ValueError):
            obj = json.loads(self._paths.server_info_path.read_text(encoding="utf-8"))
            if isinstance(obj, dict) and int(obj.get("pid") or 0) == os.getpid():
                self._paths.server_info_path.unlink()

    def _running_count(self) -> int:
        with self._commands_lock:
            return len(self._commands)

    def _public_info(self) -> Dict[str, Any]:
        return {
            "workspace": str(self._workspace_root) if self._workspace_root else None,
            "output_base": str(self._paths.output_base),
            "install_base": str(self._install_base) if self._install_base else None,
            "server_log": str(self._paths.stderr_log_path),
        }

    def _handle_status(self) -> Dict[str, Any]:
        """RPC：status（pid/uptime/运行中命令）。"""

        with self._commands_lock:
            running = [
                {"command_id": c.command_id, "name": c.name, "started_at_ms": c.started_at_ms}
                for c in self._commands.values()
            ]
        return {
            "pid": os.getpid(),
            "created_at_ms": int(self._created_at_ms),
            "uptime_ms": int((time.monotonic() - self._started_monotonic) * 1000),
            "fingerprint": self._fingerprint,
            "running": running,
            **self._public_info(),
        }

    def _handle_cancel(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """RPC：cancel。"""

        cid = str(params.get("command_id") or "")
        if not cid:
            raise ValueError("command_id must be non-empty")
        with self._commands_lock:
            cmd = self._commands.get(cid)
        if cmd is None:
            raise KeyError("command not found")
        cmd.cancel_event.set()
        logger.info("cancel requested for %s (%s)", cid, cmd.name)
        return {"command_id": cid, "cancelled": True}

    def _handle_shutdown(self) -> Dict[str, Any]:
        """RPC：shutdown（取消运行中命令并退出）。"""

        with self._commands_lock:
            for c in self._commands.values():
                c.cancel_event.set()
        self.request_shutdown()
        return {"pid": os.getpid()}

    def _handle_run(self, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """
        RPC：run（流式）。

        参数（params）：
        - command_id：客户端生成的命令 id
        - command：命令名
        - arguments：原样参数 list
        - cwd：客户端当前目录
        - startup_options：与 server 相关的 startup options 子集

        帧：
        - `{"type": "stdout"|"stderr", "data": "..."}`
        - `{"type": "exit", "code": <int>}`（最后一帧）
        """

        cid = str(params.get("command_id") or "") or secrets.token_hex(8)
        name = str(params.get("command") or "")
        if not name:
            raise ValueError("command must be non-empty")
        args = params.get("arguments") or []
        if not isinstance(args, list):
            raise ValueError("arguments must be list")
        startup = params.get("startup_options") or {}
        if not isinstance(startup, dict):
            raise ValueError("startup_options must be object")

        running = _RunningCommand(command_id=cid, name=name, started_at_ms=int(time.time() * 1000))
        with self._commands_lock:
            if cid in self._commands:
                raise ValueError(f"duplicate command_id: {cid}")
            self._commands[cid] = running

        frames: "queue.Queue[Any]" = queue.Queue()
        ctx = CommandContext(
            command_id=cid,
            name=name,
            arguments=tuple(str(a) for a in args),
            cwd=str(params.get("cwd") or ""),
            startup_options=dict(startup),
            server_info=self._public_info(),
            emit=lambda kind, text: frames.put({"type": kind, "data": text}),
            cancel_event=running.cancel_event,
            request_shutdown=self.request_shutdown,
        )

        def _work() -> None:
            code = int(ExitCode.SERVER_FAILURE)
            try:
                code = int(self._engine.run(ctx))
            except Exception as e:
                logger.exception("command %s (%s) crashed", cid, name)
                frames.put({"type": "stderr", "data": f"ERROR: internal server error: {e}\n"})
            finally:
                frames.put({"type": "exit", "code": code})
                frames.put(_END)

        logger.info("run %s: %s %s", cid, name, " ".join(ctx.arguments))
        worker = threading.Thread(target=_work, name=f"relaybuild-cmd-{cid}", daemon=True)
        worker.start()
        try:
            while True:
                item = frames.get()
                if item is _END:
                    break
                yield item
        finally:
            # 客户端断开（生成器被关闭）：取消命令并等待工作线程收尾
            running.cancel_event.set()
            worker.join(timeout=5.0)
            with self._commands_lock:
                self._commands.pop(cid, None)
            self._last_activity = time.monotonic()

    def _dispatch(self, method: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """
        路由 RPC 方法到对应 handler，逐帧产出响应。

        注意：
        - 不对外暴露网络；仅用于本机同用户访问；
        - 未知方法抛 ValueError（客户端收到 ok=false）。
        """

        if method == "run":
            yield from self._handle_run(params)
            return
        if method == "ping":
            data: Any = {"pong": True, "pid": os.getpid(), "fingerprint": self._fingerprint}
        elif method == "status":
            data = self._handle_status()
        elif method == "cancel":
            data = self._handle_cancel(params)
        elif method == "shutdown":
            data = self._handle_shutdown()
        else:
            raise ValueError(f"unknown method: {method}")
        yield {"ok": True, "data": data}

    def _format_rpc_error(self, e: Exception) -> Dict[str, Any]:
        """
        将异常映射为稳定的 RPC 错误结构。

        返回：
        - error_kind：validation|permission|not_found|internal
        - error：稳定可读错误信息
        """

        kind = "internal"
        if isinstance(e, ValueError):
            kind = "validation"
        elif isinstance(e, PermissionError):
            kind = "permission"
        elif isinstance(e, KeyError):
            kind = "not_found"

        msg = str(e)
        # KeyError 默认会带引号："'command not found'"
        if isinstance(e, KeyError):
            msg = msg.strip()
            if msg.startswith("'") and msg.endswith("'") and len(msg) >= 2:
                msg = msg[1:-1]
        if not msg:
            msg = kind
        return {"ok": False, "error_kind": kind, "error": msg}

    def _serve_connection(self, conn: socket.socket) -> None:
        with conn:
            frames: Iterator[Dict[str, Any]] = iter(())
            try:
                raw = b""
                while True:
                    b = conn.recv(65536)
                    if not b:
                        break
                    raw += b
                req = json.loads(raw.decode("utf-8", errors="replace")) if raw else {}
                if not isinstance(req, dict):
                    raise ValueError("invalid request")
                if str(req.get("secret") or "") != self._secret:
                    raise PermissionError("invalid secret")
                method = str(req.get("method") or "")
                params = req.get("params") or {}
                if not isinstance(params, dict):
                    raise ValueError("params must be object")
                self._last_activity = time.monotonic()
                frames = self._dispatch(method, params)
                first: Optional[Dict[str, Any]] = next(frames, None)
            except Exception as e:
                first = self._format_rpc_error(e)

            try:
                while first is not None:
                    conn.sendall((json.dumps(first, ensure_ascii=False) + "\n").encode("utf-8"))
                    first = next(frames, None)
            except OSError:
                logger.info("client disconnected; cancelling stream")
            finally:
                close = getattr(frames, "close", None)
                if close is not None:
                    close()

    def serve_forever(self) -> None:
        """监听 Unix socket 并处理请求，直到 shutdown 或 idle auto-exit。"""

        self._paths.server_dir.mkdir(parents=True, exist_ok=True)
        # 清理旧 socket（可能来自异常退出）
        with contextlib.suppress(OSError):
            if self._paths.socket_path.exists():
                self._paths.socket_path.unlink()

        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        threads: List[threading.Thread] = []
        try:
            s.bind(str(self._paths.socket_path))
            os.chmod(self._paths.socket_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
            s.listen(64)
            s.settimeout(0.2)
            self._write_server_info()
            logger.info("server pid=%s listening on %s", os.getpid(), self._paths.socket_path)

            while True:
                busy = self._running_count() > 0
                if self._shutdown.is_set() and not busy:
                    break
                if not busy:
                    idle = time.monotonic() - self._last_activity
                    if idle > self._max_idle_secs:
                        logger.info("idle for %.0fs; exiting", idle)
                        break

                try:
                    conn, _ = s.accept()
                except socket.timeout:
                    continue
                except OSError:
                    logger.warning("accept failed", exc_info=True)
                    continue

                conn.settimeout(None)
                t = threading.Thread(target=self._serve_connection, args=(conn,), daemon=True)
                t.start()
                threads = [x for x in threads if x.is_alive()]
                threads.append(t)
        finally:
            with contextlib.suppress(OSError):
                s.close()
            with self._commands_lock:
                for c in self._commands.values():
                    c.cancel_event.set()
            for t in threads:
                t.join(timeout=2.0)
            self._cleanup_files()
            logger.info("server pid=%s stopped", os.getpid())


def main(argv: Optional[List[str]] = None) -> int:
    """
    模块入口：从环境变量读取配置并启动 server。

    环境变量：
    - `RELAYBUILD_SERVER_OUTPUT_BASE`（必需）
    - `RELAYBUILD_SERVER_SECRET`
    - `RELAYBUILD_SERVER_WORKSPACE` / `RELAYBUILD_SERVER_INSTALL_BASE`
    - `RELAYBUILD_SERVER_MAX_IDLE_SECS` / `RELAYBUILD_SERVER_FINGERPRINT`
    - `RELAYBUILD_SERVER_ENGINE`（`module:attr`）

    说明：
    - argv 为客户端 `--server_args` 透传的参数；内置引擎不解释它们，仅记录日志。
    """

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    output_base = str(os.environ.get(OUTPUT_BASE_ENV) or "").strip()
    if not output_base:
        logger.error("%s is not set", OUTPUT_BASE_ENV)
        return int(ExitCode.SERVER_FAILURE)
    secret = str(os.environ.get(SECRET_ENV) or "").strip() or secrets.token_urlsafe(24)
    ws = str(os.environ.get(WORKSPACE_ENV) or "").strip()
    install_base = str(os.environ.get(INSTALL_BASE_ENV) or "").strip()
    try:
        max_idle = int(os.environ.get(MAX_IDLE_ENV) or 10800)
    except ValueError:
        logger.error("invalid %s", MAX_IDLE_ENV)
        return int(ExitCode.SERVER_FAILURE)
    if argv:
        logger.info("server args: %s", " ".join(argv))

    engine = load_engine(os.environ.get(ENGINE_ENV))
    server = SessionServer(
        output_base=Path(output_base),
        secret=secret,
        workspace_root=Path(ws) if ws else None,
        install_base=Path(install_base) if install_base else None,
        max_idle_secs=max_idle,
        fingerprint=str(os.environ.get(FINGERPRINT_ENV) or ""),
        engine=engine,
    )
    server.serve_forever()
    return 0


if __name__ == "__main__":  # pragma: no cover
    import sys

    raise SystemExit(main(sys.argv[1:]))
