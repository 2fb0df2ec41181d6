"""
命令 profile（按命令名组合 startup flag 片段）。

说明：
- 每个命令由 `CommandProfile` 描述：是否需要 workspace、是否需要拉起 server、
  以及只对该命令生效的 startup flag 片段；
- `CommandRegistry` 以命令名为 key 查找 profile；未注册的命令交给 server 判断，
  客户端按“需要 workspace”处理。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from relaybuild.core.errors import SchemaDefinitionError
from relaybuild.options.schema import OptionSchema, OptionSpec, ValueKind, fragment
from relaybuild.options.startup import base_startup_schema

_EMPTY_FRAGMENT = fragment()


@dataclass(frozen=True)
class CommandProfile:
    """
    单个命令的客户端能力描述。

    字段：
    - name：命令名
    - requires_workspace：是否必须在 workspace 内执行
    - spawns_server：没有运行中的 server 时是否拉起（`shutdown` 不拉起）
    - startup_fragment：仅对该命令生效的 startup flags
    - help：一行说明
    """

    name: str
    requires_workspace: bool = True
    spawns_server: bool = True
    startup_fragment: OptionSchema = field(default=_EMPTY_FRAGMENT)
    help: str = ""


class CommandRegistry:
    """
    命令 profile 注册表（构造后不可变）。

    说明：
    - `scan_schema()`：base + 所有命令片段，用于在命令名未知时扫描 startup 区；
    - `schema_for(name)`：base + 单个命令片段，用于确定命令后的适用性校验。
    """

    def __init__(self, base: OptionSchema, profiles: Iterable[CommandProfile]) -> None:
        by_name: Dict[str, CommandProfile] = {}
        for p in profiles:
            if p.name in by_name:
                raise SchemaDefinitionError(f"command defined more than once: {p.name}")
            by_name[p.name] = p
        self._base = base
        self._profiles: Mapping[str, CommandProfile] = MappingProxyType(by_name)
        self._scan = self._build_scan_schema()

    def _build_scan_schema(self) -> OptionSchema:
        """合并所有片段；多个命令共享同一个 spec 时只保留一份。"""

        extra: List[OptionSpec] = []
        seen: Dict[str, OptionSpec] = {}
        for p in self._profiles.values():
            for spec in p.startup_fragment:
                prior = seen.get(spec.name)
                if prior is None:
                    seen[spec.name] = spec
                    extra.append(spec)
                elif prior != spec:
                    raise SchemaDefinitionError(f"conflicting definitions of command flag --{spec.name}")
        return self._base.merged(OptionSchema(extra))

    @property
    def base(self) -> OptionSchema:
        return self._base

    def scan_schema(self) -> OptionSchema:
        return self._scan

    def lookup(self, name: str) -> Optional[CommandProfile]:
        return self._profiles.get(name)

    def profile_for(self, name: str) -> CommandProfile:
        """返回命令 profile；未注册命令返回默认 profile（需要 workspace、会拉起 server）。"""

        return self._profiles.get(name) or CommandProfile(name=name)

    def schema_for(self, name: Optional[str]) -> OptionSchema:
        if name is None:
            return self._base
        return self._base.merged(self.profile_for(name).startup_fragment)

    def __iter__(self) -> Iterator[CommandProfile]:
        return iter(self._profiles.values())

    def __contains__(self, name: object) -> bool:
        return name in self._profiles


_BUILD_LIKE = frozenset({"build", "test", "run"})

PROFILE_FLAG = OptionSpec(
    "profile",
    ValueKind.PATH,
    commands=_BUILD_LIKE,
    help="Write a timing profile of the command to this file (build, test, run).",
)
SHUTDOWN_GRACE_FLAG = OptionSpec(
    "shutdown_grace_secs",
    ValueKind.INTEGER,
    default=5,
    commands=frozenset({"shutdown"}),
    help="Seconds to wait for the server to exit after shutdown (shutdown only).",
)


def default_command_registry(base: Optional[OptionSchema] = None) -> CommandRegistry:
    """返回内置命令注册表。"""

    build_fragment = fragment(PROFILE_FLAG)
    return CommandRegistry(
        base if base is not None else base_startup_schema(),
        [
            CommandProfile("build", startup_fragment=build_fragment, help="Builds the specified targets."),
            CommandProfile("test", startup_fragment=build_fragment, help="Builds and runs the specified test targets."),
            CommandProfile("run", startup_fragment=build_fragment, help="Runs the specified target."),
            CommandProfile("query", help="Evaluates a dependency-graph query."),
            CommandProfile("clean", help="Removes output files of the workspace."),
            CommandProfile("info", requires_workspace=False, help="Displays runtime info about the server."),
            CommandProfile("version", requires_workspace=False, help="Prints version information."),
            CommandProfile(
                "shutdown",
                requires_workspace=False,
                spawns_server=False,
                startup_fragment=fragment(SHUTDOWN_GRACE_FLAG),
                help="Stops the server of this output base.",
            ),
            CommandProfile("help", requires_workspace=False, spawns_server=False, help="Prints this usage listing."),
        ],
    )


__all__ = ["CommandProfile", "CommandRegistry", "default_command_registry"]
