from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import secrets
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

import psutil

from relaybuild.core.errors import ServerSpawnFailure, ServerUnreachable
from relaybuild.runtime.paths import SessionPaths

logger = logging.getLogger(__name__)

SECRET_ENV = "RELAYBUILD_SERVER_SECRET"
OUTPUT_BASE_ENV = "RELAYBUILD_SERVER_OUTPUT_BASE"
WORKSPACE_ENV = "RELAYBUILD_SERVER_WORKSPACE"
INSTALL_BASE_ENV = "RELAYBUILD_SERVER_INSTALL_BASE"
MAX_IDLE_ENV = "RELAYBUILD_SERVER_MAX_IDLE_SECS"
FINGERPRINT_ENV = "RELAYBUILD_SERVER_FINGERPRINT"
ENGINE_ENV = "RELAYBUILD_SERVER_ENGINE"


@dataclass(frozen=True)
class ServerInfo:
    """server 发现信息（从 server.json 读取）。"""

    pid: int
    secret: str
    socket_path: str
    created_at_ms: int
    fingerprint: str = ""
    version: str = ""
    output_base: str = ""


def pid_alive(pid: int) -> bool:
    """
    判断 pid 是否存活（best-effort）。

    参数：
    - pid：进程号
    """

    if int(pid) <= 0:
        return False
    # 本进程拉起的 server 退出后会留下 zombie（kill(pid, 0) 仍成功），先尝试回收
    with contextlib.suppress(ChildProcessError, OSError):
        done, _status = os.waitpid(int(pid), os.WNOHANG)
        if done == int(pid):
            return False
    try:
        os.kill(int(pid), 0)
        return True
    except PermissionError:
        # 进程存在但属于其它用户
        return True
    except OSError:
        return False


def server_process_matches(info: ServerInfo, *, module: str, slack_ms: int = 2000) -> bool:
    """
    判断 server.json 记录的 pid 是否仍是写出该记录的 server 进程。

    参数：
    - info：server.json 解析结果
    - module：server 启动模块名（进程命令行中必须出现）
    - slack_ms：进程启动时间与 `created_at_ms` 比较时的容差

    说明：
    - server 退出后 pid 可能被同用户的其它进程复用；复用者的启动时间晚于记录的 `created_at_ms`；
    - 返回 False 时调用方只能清理残留文件，不得向该 pid 发信号。
    """

    try:
        proc = psutil.Process(int(info.pid))
        cmdline = " ".join(proc.cmdline())
        started_ms = int(proc.create_time() * 1000)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
    if module not in cmdline:
        logger.debug("pid=%s is not a server process: %s", info.pid, cmdline)
        return False
    if info.created_at_ms and started_ms > int(info.created_at_ms) + int(slack_ms):
        logger.debug("pid=%s started after the server record was written", info.pid)
        return False
    return True


def compute_fingerprint(server_options: Mapping[str, Any]) -> str:
    """
    计算 server 启动参数指纹。

    说明：
    - 指纹不同表示已运行的 server 用的是另一组 startup options，需要重启；
    - 输入必须可 JSON 序列化（key 排序后计算 sha256）。
    """

    raw = json.dumps(dict(server_options), ensure_ascii=False, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def read_server_info(path: Path) -> Optional[ServerInfo]:
    """
    读取 server.json 并解析为 ServerInfo。

    返回：
    - ServerInfo：成功时返回
    - None：文件不存在/解析失败/字段缺失
    """

    p = Path(path)
    if not p.exists():
        return None
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(obj, dict):
        return None
    try:
        info = ServerInfo(
            pid=int(obj.get("pid")),
            secret=str(obj.get("secret") or ""),
            socket_path=str(obj.get("socket_path") or ""),
            created_at_ms=int(obj.get("created_at_ms") or 0),
            fingerprint=str(obj.get("fingerprint") or ""),
            version=str(obj.get("version") or ""),
            output_base=str(obj.get("output_base") or ""),
        )
    except (TypeError, ValueError):
        return None
    if not info.secret or not info.socket_path:
        return None
    return info


class ServerClient:
    """
    本地 server client（Unix socket；一次连接一个 JSON 请求，响应为 NDJSON 帧）。

    说明：
    - 不负责启动 server；启动由 `ServerLauncher` 完成，状态流转由 dispatcher 决定；
    - socket 层错误统一映射为 `ServerUnreachable`。
    """

    def __init__(self, *, paths: SessionPaths) -> None:
        self._paths = paths

    @property
    def paths(self) -> SessionPaths:
        return self._paths

    def read_server_info(self) -> Optional[ServerInfo]:
        return read_server_info(self._paths.server_info_path)

    def _open(self, info: ServerInfo, *, method: str, params: Optional[Dict[str, Any]], timeout_sec: Optional[float]) -> socket.socket:
        req = {"method": str(method), "params": params or {}, "secret": info.secret}
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            s.settimeout(timeout_sec)
            s.connect(str(info.socket_path))
            s.sendall(json.dumps(req, ensure_ascii=False).encode("utf-8"))
            s.shutdown(socket.SHUT_WR)
        except OSError as e:
            s.close()
            raise ServerUnreachable(
                f"Cannot reach server at {info.socket_path}: {e}",
                details={"method": method, "pid": info.pid},
            ) from e
        return s

    @staticmethod
    def _check_frame(obj: Any, *, method: str) -> Dict[str, Any]:
        if not isinstance(obj, dict):
            raise ServerUnreachable("Invalid server response.", details={"method": method})
        if obj.get("ok") is False:
            kind = str(obj.get("error_kind") or "").strip() or "internal"
            msg = str(obj.get("error") or "server call failed")
            raise ServerUnreachable(f"Server rejected '{method}' ({kind}): {msg}", details={"method": method, "error_kind": kind})
        return obj

    def call(
        self,
        info: ServerInfo,
        *,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_sec: float = 5.0,
    ) -> Dict[str, Any]:
        """
        发起一次非流式 RPC。

        参数：
        - info：ServerInfo（pid/secret/socket_path）
        - method：方法名（`ping`/`status`/`cancel`/`shutdown`）
        - params：参数对象（可选）
        - timeout_sec：socket 超时秒数

        返回：
        - data 对象（dict）

        异常：
        - ServerUnreachable：连接/读写失败，或 server 返回 ok=false
        """

        frames = list(self.stream(info, method=method, params=params, timeout_sec=timeout_sec))
        if not frames:
            raise ServerUnreachable(f"Server closed the connection without answering '{method}'.", details={"method": method})
        data = frames[0].get("data")
        return data if isinstance(data, dict) else {"data": data}

    def stream(
        self,
        info: ServerInfo,
        *,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_sec: Optional[float] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        发起一次流式 RPC，按到达顺序逐帧产出（每行一个 JSON 对象）。

        说明：
        - `timeout_sec=None` 表示读取不超时（长时间运行的命令）；
        - 生成器被关闭时连接随之关闭，server 会据此取消命令。
        """

        s = self._open(info, method=method, params=params, timeout_sec=timeout_sec)
        with s, s.makefile("rb") as rf:
            while True:
                try:
                    line = rf.readline()
                except OSError as e:
                    raise ServerUnreachable(
                        f"Lost connection to server during '{method}': {e}",
                        details={"method": method, "pid": info.pid},
                    ) from e
                if not line:
                    return
                if not line.strip():
                    continue
                try:
                    obj = json.loads(line.decode("utf-8", errors="replace"))
                except json.JSONDecodeError as e:
                    raise ServerUnreachable("Invalid server response frame.", details={"method": method}) from e
                yield self._check_frame(obj, method=method)

    def ping(self, info: ServerInfo, *, timeout_sec: float) -> Dict[str, Any]:
        return self.call(info, method="ping", timeout_sec=timeout_sec)

    def cancel(self, info: ServerInfo, *, command_id: str, timeout_sec: float = 2.0) -> Dict[str, Any]:
        return self.call(info, method="cancel", params={"command_id": command_id}, timeout_sec=timeout_sec)

    def shutdown(self, info: ServerInfo, *, timeout_sec: float = 2.0) -> Dict[str, Any]:
        return self.call(info, method="shutdown", timeout_sec=timeout_sec)


def _stderr_tail(path: Path, limit: int = 2000) -> str:
    try:
        if path.exists():
            return path.read_bytes()[-limit:].decode("utf-8", errors="replace").strip()
    except OSError:
        return ""
    return ""


def _normalized_pythonpath(env: Dict[str, str]) -> None:
    # 测试/嵌入式调用场景下，当前进程可能通过 `sys.path` 加载本包，但环境变量里没有 `PYTHONPATH`。
    if not str(env.get("PYTHONPATH") or "").strip():
        import relaybuild as _relaybuild

        env["PYTHONPATH"] = str(Path(_relaybuild.__file__).resolve().parent.parent)

    # 相对 PYTHONPATH 在 server 进程 cwd 不同时会失效，统一转为绝对路径。
    parts = []
    base = Path.cwd().resolve()
    for raw in str(env.get("PYTHONPATH") or "").split(os.pathsep):
        if not raw:
            continue
        p = Path(raw)
        if not p.is_absolute():
            p = (base / p).resolve()
        parts.append(str(p))
    if parts:
        env["PYTHONPATH"] = os.pathsep.join(parts)


class ServerLauncher:
    """
    启动 output_base 级单例 server 进程。

    说明：
    - server 以 `python -m <module>` 启动，脱离当前会话（`start_new_session=True`）；
    - 配置通过环境变量传入，stdout/stderr 追加写入 server 目录下的日志文件。
    """

    def __init__(
        self,
        *,
        paths: SessionPaths,
        module: str = "relaybuild.runtime.server",
        engine: Optional[str] = None,
        python: str = sys.executable,
        poll_interval: float = 0.05,
    ) -> None:
        self._paths = paths
        self._module = str(module)
        self._engine = engine
        self._python = str(python)
        self._poll_interval = float(poll_interval)

    def cleanup_stale_files(self) -> None:
        """清理旧 socket / server.json（best-effort；用于处理 server 异常退出的残余）。"""

        with contextlib.suppress(OSError):
            if self._paths.socket_path.exists():
                self._paths.socket_path.unlink()
        with contextlib.suppress(OSError):
            if self._paths.server_info_path.exists():
                self._paths.server_info_path.unlink()

    def spawn(
        self,
        *,
        workspace_root: Optional[Path],
        install_base: Path,
        max_idle_secs: int,
        fingerprint: str,
        server_args: Sequence[str] = (),
    ) -> subprocess.Popen:
        """
        启动 server 进程（不等待就绪）。

        参数：
        - workspace_root：workspace 根目录（没有 workspace 时为 None；server cwd 为 output_base）
        - install_base：安装目录
        - max_idle_secs：空闲退出阈值
        - fingerprint：startup options 指纹（写入 server.json）
        - server_args：额外透传给 server 进程的参数

        异常：
        - ServerSpawnFailure：进程无法启动
        """

        self._paths.server_dir.mkdir(parents=True, exist_ok=True)
        self.cleanup_stale_files()

        env = dict(os.environ)
        env[SECRET_ENV] = secrets.token_urlsafe(24)
        env[OUTPUT_BASE_ENV] = str(self._paths.output_base)
        env[INSTALL_BASE_ENV] = str(install_base)
        env[MAX_IDLE_ENV] = str(int(max_idle_secs))
        env[FINGERPRINT_ENV] = str(fingerprint)
        if workspace_root is not None:
            env[WORKSPACE_ENV] = str(workspace_root)
        else:
            env.pop(WORKSPACE_ENV, None)
        if self._engine:
            env[ENGINE_ENV] = str(self._engine)
        else:
            env.pop(ENGINE_ENV, None)
        _normalized_pythonpath(env)

        argv: List[str] = [self._python, "-m", self._module, *[str(a) for a in server_args]]
        cwd = workspace_root if workspace_root is not None else self._paths.output_base
        logger.info("starting server: %s (cwd=%s)", " ".join(argv), cwd)
        try:
            with open(self._paths.stdout_log_path, "ab") as out_f, open(self._paths.stderr_log_path, "ab") as err_f:
                return subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=str(cwd),
                    env=env,
                    stdout=out_f,
                    stderr=err_f,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                    close_fds=True,
                )
        except OSError as e:
            raise ServerSpawnFailure(
                f"Failed to start server process: {e}",
                details={"argv": argv, "output_base": str(self._paths.output_base)},
            ) from e

    def terminate(self, proc: subprocess.Popen, *, grace_sec: float = 2.0) -> None:
        """终止由本客户端启动的 server 进程（SIGTERM，超时后 SIGKILL）。"""

        if proc.poll() is not None:
            return
        with contextlib.suppress(OSError):
            proc.terminate()
        try:
            proc.wait(timeout=grace_sec)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(OSError):
                proc.kill()
            with contextlib.suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=grace_sec)

    def wait_until_ready(
        self,
        proc: subprocess.Popen,
        client: ServerClient,
        *,
        timeout_sec: float,
        probe_timeout_sec: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> ServerInfo:
        """
        等待 server 写出 server.json 并响应 ping。

        异常：
        - ServerSpawnFailure：进程提前退出，或超时未就绪（进程会被终止；消息带 stderr 尾部）
        """

        deadline = clock() + float(timeout_sec)
        exited: Optional[int] = None
        while clock() < deadline:
            exited = proc.poll()
            if exited is not None:
                break
            info = client.read_server_info()
            if info is not None and info.pid == proc.pid:
                try:
                    client.ping(info, timeout_sec=probe_timeout_sec)
                    return info
                except ServerUnreachable:
                    logger.debug("server pid=%s not answering yet", proc.pid)
            time.sleep(self._poll_interval)

        if exited is None:
            self.terminate(proc)
            msg = f"Server did not become ready within {timeout_sec:g}s"
        else:
            msg = f"Server exited during startup with code {exited}"
        # 超时：把 stderr 尾部带上，便于定位（避免输出 secrets）
        tail = _stderr_tail(self._paths.stderr_log_path)
        details: Dict[str, Any] = {"pid": proc.pid, "stderr_log": str(self._paths.stderr_log_path)}
        if tail:
            msg += f"; server.stderr.tail={tail!r}"
            details["stderr_tail"] = tail
        raise ServerSpawnFailure(msg + ".", details=details)


__all__ = [
    "ServerClient",
    "ServerInfo",
    "ServerLauncher",
    "compute_fingerprint",
    "pid_alive",
    "read_server_info",
    "server_process_matches",
]
