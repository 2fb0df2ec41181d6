from __future__ import annotations

from dataclasses import dataclass
import hashlib
from pathlib import Path
import tempfile


@dataclass(frozen=True)
class SessionPaths:
    """output_base 下会话相关的路径集合。"""

    output_base: Path
    lock_path: Path
    server_dir: Path
    socket_path: Path
    server_info_path: Path
    stdout_log_path: Path
    stderr_log_path: Path


def get_session_paths(*, output_base: Path) -> SessionPaths:
    """
    获取会话相关路径（锁文件位于 output_base 下，server 状态位于 output_base/server 下）。

    参数：
    - output_base：output 区域根目录
    """

    base = Path(output_base).resolve()
    server_dir = (base / "server").resolve()
    socket_path = (server_dir / "server.sock").resolve()
    # AF_UNIX 路径长度有上限（常见 ~104 bytes）；output_base 较深时降级到更短的 `/tmp` socket 路径。
    if len(str(socket_path)) > 90:
        h = hashlib.sha256(str(base).encode("utf-8", errors="replace")).hexdigest()[:16]
        socket_path = (Path(tempfile.gettempdir()) / f"relaybuild_{h}.sock").resolve()
    return SessionPaths(
        output_base=base,
        lock_path=(base / "lock").resolve(),
        server_dir=server_dir,
        socket_path=socket_path,
        server_info_path=(server_dir / "server.json").resolve(),
        stdout_log_path=(server_dir / "server.stdout.log").resolve(),
        stderr_log_path=(server_dir / "server.stderr.log").resolve(),
    )
