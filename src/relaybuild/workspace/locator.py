"""
Workspace 定位与派生路径。

行为：
- 从起始目录向上逐级查找 marker（文件或目录名），最近的祖先命中即为 workspace root；
- 找不到 marker 不是错误：返回 `has_workspace=False` 的结果，由命令 profile 决定能否执行；
- output_base / install_base 由 root 路径与用户身份确定性派生（sha256），
  多个进程无需共享状态即可得到相同路径。
"""

from __future__ import annotations

import getpass
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

from relaybuild.core.errors import WorkspaceOverrideInvalid

logger = logging.getLogger(__name__)

DEFAULT_MARKERS: Tuple[str, ...] = ("WORKSPACE", "WORKSPACE.yaml")
NO_WORKSPACE_DIRNAME = "_noworkspace"
WORKSPACE_OVERRIDE_ENV = "RELAYBUILD_WORKSPACE"


@dataclass(frozen=True)
class WorkspaceRoot:
    """
    workspace 解析结果。

    字段：
    - starting_dir：解析起点（调用方当前目录，绝对路径）
    - root：workspace 根目录；无 workspace 时为 None
    - marker：命中的 marker 名；无 workspace 时为 None
    - output_user_root：当前用户的 output 根目录
    - output_base：派生的 output 区域（会话锁与 server 状态所在目录）
    - install_base：派生的 install 区域
    """

    starting_dir: Path
    root: Optional[Path]
    marker: Optional[str]
    output_user_root: Path
    output_base: Path
    install_base: Path

    @property
    def has_workspace(self) -> bool:
        return self.root is not None


def current_user() -> str:
    """返回调用者身份（用户名；取不到时退化为 uid）。"""

    try:
        name = getpass.getuser()
    except Exception:
        name = ""
    name = str(name or "").strip()
    if name:
        return name
    getuid = getattr(os, "getuid", None)
    return str(getuid()) if callable(getuid) else "unknown"


def _digest(*parts: str) -> str:
    h = hashlib.sha256("\0".join(parts).encode("utf-8", errors="replace"))
    return h.hexdigest()[:32]


def default_output_user_root(*, user: str, base: Optional[Path] = None) -> Path:
    """
    派生当前用户的 output 根目录：`<base or ~/.cache/relaybuild>/_relaybuild_<user>`。

    参数：
    - user：用户身份
    - base：覆盖 `~/.cache/relaybuild` 的根目录
    """

    root = Path(base).expanduser() if base is not None else Path.home() / ".cache" / "relaybuild"
    return (root / f"_relaybuild_{user}").resolve()


def derive_output_base(*, output_user_root: Path, root: Optional[Path], user: str) -> Path:
    """派生 output_base；无 workspace 时所有调用共享 `_noworkspace`。"""

    if root is None:
        return (Path(output_user_root) / NO_WORKSPACE_DIRNAME).resolve()
    return (Path(output_user_root) / _digest(user, str(root))).resolve()


def derive_install_base(*, output_user_root: Path, version: str) -> Path:
    """派生 install_base：同一版本的客户端得到同一目录。"""

    return (Path(output_user_root) / "install" / _digest(str(version))).resolve()


class WorkspaceLocator:
    """
    向上查找 workspace marker 的定位器。

    说明：
    - marker 命中规则为“最近祖先优先”；嵌套 workspace 不会被静默提升到最外层；
    - 只做文件系统探测，不创建目录、不写文件。
    """

    def __init__(
        self,
        *,
        markers: Sequence[str] = DEFAULT_MARKERS,
        output_user_root: Optional[Path] = None,
        user: Optional[str] = None,
        version: Optional[str] = None,
    ) -> None:
        """
        参数：
        - markers：marker 文件/目录名（同一目录下任一存在即命中；按给定顺序报告）
        - output_user_root：显式的用户 output 根目录；None 时按用户身份派生
        - user：用户身份；None 时读取当前用户
        - version：客户端版本（用于派生 install_base）；None 时取包版本
        """

        cleaned = [str(m).strip() for m in markers if str(m).strip()]
        if not cleaned:
            raise ValueError("at least one workspace marker is required")
        self._markers = tuple(cleaned)
        self._user = user or current_user()
        self._output_user_root = (
            Path(output_user_root).expanduser().resolve()
            if output_user_root is not None
            else default_output_user_root(user=self._user)
        )
        if version is None:
            from relaybuild import __version__ as version
        self._version = str(version)

    @property
    def markers(self) -> Tuple[str, ...]:
        return self._markers

    def find_root(self, starting_dir: Path) -> Tuple[Optional[Path], Optional[str]]:
        """
        从 starting_dir 向上查找最近的 marker。

        返回：
        - (root, marker)：未找到时为 (None, None)
        """

        current = Path(starting_dir).resolve()
        while True:
            for marker in self._markers:
                if (current / marker).exists():
                    return current, marker
            parent = current.parent
            if parent == current:
                return None, None
            current = parent

    def resolve(self, starting_dir: Path, *, override: Optional[str] = None) -> WorkspaceRoot:
        """
        解析 workspace。

        参数：
        - starting_dir：起点目录（通常为当前工作目录）
        - override：显式 workspace 根目录（`RELAYBUILD_WORKSPACE`）；给出时不再查找 marker

        返回：
        - WorkspaceRoot：未找到 workspace 时 `has_workspace=False`

        异常：
        - WorkspaceOverrideInvalid：override 不是已存在的目录
        """

        start = Path(starting_dir).resolve()
        marker: Optional[str]
        if override is not None and str(override).strip():
            root: Optional[Path] = Path(str(override).strip()).expanduser()
            if not root.is_absolute():
                root = start / root
            root = root.resolve()
            if not root.is_dir():
                raise WorkspaceOverrideInvalid(str(root))
            marker = None
        else:
            root, marker = self.find_root(start)

        if root is None:
            logger.debug("no workspace marker %s above %s", self._markers, start)
        else:
            logger.debug("workspace root %s (marker=%s)", root, marker)

        return WorkspaceRoot(
            starting_dir=start,
            root=root,
            marker=marker,
            output_user_root=self._output_user_root,
            output_base=derive_output_base(output_user_root=self._output_user_root, root=root, user=self._user),
            install_base=derive_install_base(output_user_root=self._output_user_root, version=self._version),
        )

    def with_output_user_root(self, output_user_root: Path) -> "WorkspaceLocator":
        """返回使用另一个 output 根目录的新定位器（`--output_user_root`）。"""

        return WorkspaceLocator(
            markers=self._markers,
            output_user_root=output_user_root,
            user=self._user,
            version=self._version,
        )


__all__ = [
    "DEFAULT_MARKERS",
    "WORKSPACE_OVERRIDE_ENV",
    "WorkspaceLocator",
    "WorkspaceRoot",
    "current_user",
    "derive_install_base",
    "derive_output_base",
]
