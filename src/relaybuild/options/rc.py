"""
rc 文件（`.relaybuildrc`）中的 startup 参数。

读取顺序（后者优先级更高，命令行又高于所有 rc）：
1) `~/.relaybuildrc`（`--nohome_rc` 关闭）
2) `<workspace_root>/.relaybuildrc`（`--noworkspace_rc` 关闭）
3) `--rc_file=<path>`（显式指定时必须存在）

语法（最小集合）：
- 忽略空行与 `#` 注释；token 按 shell 规则切分
- `startup <flags...>`：客户端读取的 startup 参数
- `import <path>` / `try-import <path>`：引入其它 rc 文件；`%workspace%` 替换为 workspace root
- 其它动词（例如 `build --jobs=4`）属于命令参数，由 server 处理，客户端跳过
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import List, Optional, Set

from relaybuild.core.errors import SchemaViolation
from relaybuild.options.classifier import ParsedStartupOptions, RcStartupArgs
from relaybuild.workspace.locator import WorkspaceRoot

logger = logging.getLogger(__name__)

DEFAULT_RC_FILE_NAME = ".relaybuildrc"
WORKSPACE_PLACEHOLDER = "%workspace%"


def _expand_import_path(raw: str, *, workspace: WorkspaceRoot, rc_path: Path) -> Optional[Path]:
    """
    解析 import 路径。

    返回：
    - Path：绝对路径
    - None：路径引用了 `%workspace%` 但当前没有 workspace
    """

    if WORKSPACE_PLACEHOLDER in raw:
        if workspace.root is None:
            return None
        raw = raw.replace(WORKSPACE_PLACEHOLDER, str(workspace.root))
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = rc_path.parent / p
    return p.resolve()


def parse_rc_file(path: Path, *, workspace: WorkspaceRoot, _stack: Optional[Set[Path]] = None) -> List[RcStartupArgs]:
    """
    解析单个 rc 文件（含 import），返回按出现顺序排列的 startup 参数块。

    参数：
    - path：rc 文件路径（必须存在）
    - workspace：workspace 解析结果（用于 `%workspace%` 替换）

    异常：
    - SchemaViolation：语法错误、import 循环或 `import` 的文件不存在
    """

    rc_path = Path(path).resolve()
    stack = set(_stack or ())
    if rc_path in stack:
        raise SchemaViolation(
            f"Import loop detected while reading rc file {rc_path}.",
            code="CLI_RC_FILE_INVALID",
            details={"path": str(rc_path)},
        )
    stack.add(rc_path)

    out: List[RcStartupArgs] = []
    source = f"rc:{rc_path}"
    try:
        text = rc_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SchemaViolation(
            f"Cannot read rc file {rc_path}: {exc}.",
            code="CLI_RC_FILE_INVALID",
            details={"path": str(rc_path)},
        ) from exc
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        try:
            tokens = shlex.split(raw_line, comments=True)
        except ValueError as exc:
            raise SchemaViolation(
                f"Malformed line {lineno} in rc file {rc_path}: {exc}.",
                code="CLI_RC_FILE_INVALID",
                details={"path": str(rc_path), "line": lineno},
            ) from None
        if not tokens:
            continue

        verb, rest = tokens[0], tokens[1:]
        if verb in ("import", "try-import"):
            if len(rest) != 1:
                raise SchemaViolation(
                    f"'{verb}' expects exactly one path (line {lineno} in {rc_path}).",
                    code="CLI_RC_FILE_INVALID",
                    details={"path": str(rc_path), "line": lineno},
                )
            target = _expand_import_path(rest[0], workspace=workspace, rc_path=rc_path)
            if target is None or not target.is_file():
                if verb == "try-import":
                    logger.debug("skipping missing rc import %s (%s:%d)", rest[0], rc_path, lineno)
                    continue
                raise SchemaViolation(
                    f"Imported rc file not found: {rest[0]} (line {lineno} in {rc_path}).",
                    code="CLI_RC_FILE_NOT_FOUND",
                    details={"path": str(rc_path), "line": lineno, "import": rest[0]},
                )
            out.extend(parse_rc_file(target, workspace=workspace, _stack=stack))
            continue

        if verb == "startup":
            if rest:
                out.append(RcStartupArgs(source=source, args=tuple(rest)))
            continue

        logger.debug("rc line for %r left to the server (%s:%d)", verb, rc_path, lineno)
    return out


def rc_file_candidates(
    *,
    options: ParsedStartupOptions,
    workspace: WorkspaceRoot,
    rc_file_name: str = DEFAULT_RC_FILE_NAME,
    home: Optional[Path] = None,
) -> List[Path]:
    """
    返回需要读取的 rc 文件列表（按优先级从低到高）。

    异常：
    - SchemaViolation：`--rc_file` 指向的文件不存在
    """

    if options["ignore_all_rc_files"]:
        return []

    files: List[Path] = []
    if options["home_rc"]:
        home_rc = (Path(home) if home is not None else Path.home()) / rc_file_name
        if home_rc.is_file():
            files.append(home_rc.resolve())
    if options["workspace_rc"] and workspace.root is not None:
        ws_rc = workspace.root / rc_file_name
        if ws_rc.is_file():
            files.append(ws_rc.resolve())

    explicit = options["rc_file"]
    if explicit is not None:
        p = Path(explicit)
        if not p.is_file():
            raise SchemaViolation(
                f"rc file not found: {p}.",
                code="CLI_RC_FILE_NOT_FOUND",
                details={"path": str(p)},
            )
        files.append(p.resolve())

    uniq: List[Path] = []
    for p in files:
        if p not in uniq:
            uniq.append(p)
    return uniq


def load_rc_startup_args(
    *,
    options: ParsedStartupOptions,
    workspace: WorkspaceRoot,
    rc_file_name: str = DEFAULT_RC_FILE_NAME,
    home: Optional[Path] = None,
) -> List[RcStartupArgs]:
    """
    读取所有 rc 文件中的 startup 参数块。

    参数：
    - options：仅由命令行分类得到的 options（决定读取哪些 rc 文件）
    - workspace：workspace 解析结果
    - rc_file_name：rc 文件名（配置项 `workspace.rc_file_name`）
    - home：用户 home 目录；默认 `Path.home()`
    """

    out: List[RcStartupArgs] = []
    for p in rc_file_candidates(options=options, workspace=workspace, rc_file_name=rc_file_name, home=home):
        blocks = parse_rc_file(p, workspace=workspace)
        logger.debug("rc file %s contributed %d startup line(s)", p, len(blocks))
        out.extend(blocks)
    return out


__all__ = ["DEFAULT_RC_FILE_NAME", "load_rc_startup_args", "parse_rc_file", "rc_file_candidates"]
