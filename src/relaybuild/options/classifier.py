"""
命令行分类器：argv -> {startup options, command, command arguments}。

规则：
- 从左到右扫描；只要 token 是 `--name` / `--name=value` / `--name value`（非 boolean）/
  `--noname`（boolean 取反），就按 schema 解析为 startup flag；
- startup 区出现未声明的 flag 直接失败（不是 warning）；只允许出现在命令之后的 flag 视为错位；
- 第一个非 flag token 即命令名；其后的 token 原样作为命令参数，不再按 schema 解释；
- `--` 强制把下一个 token 当作命令名（即使它看起来像 flag）；
- 可重复 flag 累积，其它 flag 后者覆盖前者；扫描结束后未给出的 flag 一律填默认值。

说明：
- 分类是纯函数：不读文件、不碰 server；rc 文件里的 startup 参数由调用方先读好再传入。
- flag 对具体命令的适用性在 `validate()` 中检查（分类阶段只关心位置与语法）。
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple, Union

from relaybuild.core.errors import CommandRequiresWorkspace, SchemaViolation
from relaybuild.options.commands import CommandProfile, CommandRegistry
from relaybuild.options.schema import OptionSchema, OptionSpec, ValueKind
from relaybuild.workspace.locator import WorkspaceRoot

SOURCE_DEFAULT = "default"
SOURCE_COMMAND_LINE = "command_line"


@dataclass(frozen=True)
class Command:
    """被分类出的命令（名字 + 原样参数）。"""

    name: str
    arguments: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RcStartupArgs:
    """
    某个 rc 文件贡献的 startup 参数。

    字段：
    - source：来源标签（例如 `rc:/home/u/.relaybuildrc`）
    - args：按出现顺序排列的 token
    """

    source: str
    args: Tuple[str, ...]


class ParsedStartupOptions(Mapping):
    """
    完整填充的 startup options（只读 mapping）。

    说明：
    - 每个声明过的 flag 都有值（显式给出或默认值），下游无需区分“默认”和“未设置”；
    - `sources` 记录每个值的来源：`default` / `command_line` / `rc:<path>`；
    - `explicit` 为显式给出的 flag 名集合（用于适用性校验）。
    """

    def __init__(self, values: Dict[str, Any], *, sources: Dict[str, str], explicit: FrozenSet[str]) -> None:
        self._values = MappingProxyType(dict(values))
        self._sources = MappingProxyType(dict(sources))
        self._explicit = frozenset(explicit)

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def sources(self) -> Mapping[str, str]:
        return self._sources

    @property
    def explicit(self) -> FrozenSet[str]:
        return self._explicit

    def server_subset(self, schema: OptionSchema) -> Dict[str, Any]:
        """
        返回与 server 配置相关的 flag 子集（JSON 友好）。

        说明：
        - 路径转为字符串，repeated 值转为 list；
        - 结果同时用于转发给 server 与计算 server 配置指纹。
        """

        out: Dict[str, Any] = {}
        for name in schema.server_option_names():
            if name not in self._values:
                continue
            out[name] = _jsonable(self._values[name])
        return out

    def __repr__(self) -> str:
        return f"ParsedStartupOptions({dict(self._values)!r})"


@dataclass(frozen=True)
class Classification:
    """分类结果；`command` 为 None 表示空命令行。"""

    options: ParsedStartupOptions
    command: Optional[Command] = None
    startup_tokens: Tuple[str, ...] = field(default=(), compare=False)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, tuple):
        return [_jsonable(x) for x in value]
    return value


def _resolve_flag(schema: OptionSchema, name: str) -> Tuple[Optional[OptionSpec], bool]:
    """按名字解析 flag；支持 boolean 的 `no` 前缀取反。返回 (spec, negated)。"""

    spec = schema.lookup(name)
    if spec is not None:
        return spec, False
    if name.startswith("no"):
        spec = schema.lookup(name[2:])
        if spec is not None and spec.kind == ValueKind.BOOLEAN:
            return spec, True
    return None, False


def _scan(
    tokens: Sequence[str],
    schema: OptionSchema,
    *,
    source: str,
    cwd: Path,
    allow_command: bool,
) -> Tuple[List[Tuple[str, Any, str]], Optional[Command], int]:
    """
    扫描 startup 区。

    返回：
    - (explicit, command, consumed)：显式 flag 列表（name/value/source）、命令（可能为 None）、
      startup 区消耗的 token 数

    异常：
    - SchemaViolation：未知/错位 flag、缺少值、值类型不符，或 rc 中出现非 flag token
    """

    explicit: List[Tuple[str, Any, str]] = []
    i = 0
    n = len(tokens)
    while i < n:
        tok = str(tokens[i])

        if tok == "--":
            if not allow_command:
                raise SchemaViolation(
                    "'--' is not allowed in rc startup lines.",
                    details={"source": source},
                )
            if i + 1 < n:
                return explicit, Command(name=str(tokens[i + 1]), arguments=tuple(str(t) for t in tokens[i + 2 :])), i + 1
            return explicit, None, i + 1

        if not tok.startswith("-") or tok == "-":
            if not allow_command:
                raise SchemaViolation(
                    f"Only startup options may appear in rc startup lines, got {tok!r}.",
                    details={"source": source, "token": tok},
                )
            return explicit, Command(name=tok, arguments=tuple(str(t) for t in tokens[i + 1 :])), i

        if not tok.startswith("--"):
            raise SchemaViolation(
                f"Unknown startup option: {tok!r} (startup options use the --name form).",
                details={"option": tok, "source": source},
            )

        name, has_eq, raw = tok[2:].partition("=")
        spec, negated = _resolve_flag(schema, name)
        if spec is None:
            raise SchemaViolation(
                f"Unknown startup option: '--{name}'.",
                details={"option": name, "source": source},
            )
        if not spec.allowed_in_startup:
            raise SchemaViolation(
                f"'--{spec.name}' is not a startup option; place it after the command name.",
                code="CLI_OPTION_MISPLACED",
                details={"option": spec.name, "source": source},
            )

        if spec.kind == ValueKind.BOOLEAN:
            if has_eq:
                if negated:
                    raise SchemaViolation(
                        f"'--{name}' does not take a value.",
                        details={"option": spec.name, "source": source},
                    )
                value: Any = spec.convert(raw)
            else:
                value = not negated
        else:
            if not has_eq:
                if i + 1 >= n:
                    raise SchemaViolation(
                        f"Startup option '--{spec.name}' requires a value.",
                        details={"option": spec.name, "source": source},
                    )
                i += 1
                raw = str(tokens[i])
            value = spec.convert(raw, cwd=cwd)

        explicit.append((spec.name, value, source))
        i += 1

    return explicit, None, n


def classify(
    argv: Sequence[str],
    schema: OptionSchema,
    workspace: Union[WorkspaceRoot, Path],
    *,
    rc_args: Sequence[RcStartupArgs] = (),
) -> Classification:
    """
    分类命令行。

    参数：
    - argv：参数向量（不含程序名）
    - schema：扫描用 schema（通常为 base + 所有命令片段）
    - workspace：workspace 解析结果，或尚未解析 workspace 时的起始目录（相对路径值以它为基准）
    - rc_args：rc 文件贡献的 startup 参数（优先级低于命令行）

    返回：
    - Classification：所有声明 flag 均有值；`command` 为 None 表示空命令行

    异常：
    - SchemaViolation：startup 区存在未知/错位/非法 flag
    """

    cwd = Path(workspace.starting_dir if isinstance(workspace, WorkspaceRoot) else workspace)
    entries: List[Tuple[str, Any, str]] = []
    for rc in rc_args:
        rc_explicit, _cmd, _consumed = _scan(rc.args, schema, source=rc.source, cwd=cwd, allow_command=False)
        entries.extend(rc_explicit)

    cl_explicit, command, consumed = _scan(list(argv), schema, source=SOURCE_COMMAND_LINE, cwd=cwd, allow_command=True)
    entries.extend(cl_explicit)

    values = schema.defaults()
    sources: Dict[str, str] = {name: SOURCE_DEFAULT for name in values}
    explicit: set[str] = set()
    for name, value, src in entries:
        spec = schema.lookup(name)
        if spec is not None and spec.repeatable:
            prior = values[name] if name in explicit else ()
            values[name] = tuple(prior) + (value,)
        else:
            values[name] = value
        sources[name] = src
        explicit.add(name)

    return Classification(
        options=ParsedStartupOptions(values, sources=sources, explicit=frozenset(explicit)),
        command=command,
        startup_tokens=tuple(str(t) for t in list(argv)[:consumed]),
    )


def validate(classification: Classification, registry: CommandRegistry, workspace: WorkspaceRoot) -> Optional[CommandProfile]:
    """
    命令名确定后的校验（分类之后执行）。

    校验项：
    - 显式给出的 flag 必须适用于所选命令（命令专属 flag 用在别的命令上视为错误）；
    - 需要 workspace 的命令在 workspace 之外执行时失败。

    返回：
    - CommandProfile：所选命令的 profile；空命令行返回 None

    异常：
    - SchemaViolation：flag 不适用于所选命令
    - CommandRequiresWorkspace：命令需要 workspace 但未找到
    """

    command = classification.command
    name = command.name if command is not None else None
    scan = registry.scan_schema()
    for opt in sorted(classification.options.explicit):
        spec = scan.lookup(opt)
        if spec is None or spec.applies_to(name):
            continue
        allowed = ", ".join(sorted(spec.commands or ()))
        where = f"the '{name}' command" if name is not None else "an empty command line"
        raise SchemaViolation(
            f"Startup option '--{opt}' is not applicable to {where} (only: {allowed}).",
            code="CLI_OPTION_NOT_APPLICABLE",
            details={"option": opt, "command": name, "allowed_commands": sorted(spec.commands or ())},
        )

    if command is None:
        return None
    profile = registry.profile_for(command.name)
    if profile.requires_workspace and not workspace.has_workspace:
        raise CommandRequiresWorkspace(command=command.name, starting_dir=str(workspace.starting_dir))
    return profile


__all__ = [
    "Classification",
    "Command",
    "ParsedStartupOptions",
    "RcStartupArgs",
    "classify",
    "validate",
]
