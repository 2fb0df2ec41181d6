"""
Option schema（声明式 flag 注册表）。

设计目标：
- `OptionSpec` 只描述 flag：名字、值类型、默认值、合法位置、适用命令；
- `OptionSchema` 是构造后不可变的 name -> spec 映射；同名重复注册在构造期直接失败；
- 命令相关的 flag 通过 `merged()` 组合片段得到，不使用继承。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional

from relaybuild.core.errors import SchemaDefinitionError, SchemaViolation

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


class ValueKind(str, Enum):
    """flag 值类型。"""

    BOOLEAN = "boolean"
    STRING = "string"
    INTEGER = "integer"
    PATH = "path"
    REPEATED_STRING = "repeated_string"


class OptionPosition(str, Enum):
    """flag 合法位置：仅 startup 区、仅命令参数区、或两者皆可。"""

    STARTUP = "startup"
    COMMAND = "command"
    BOTH = "both"


@dataclass(frozen=True)
class OptionSpec:
    """
    单个 flag 的声明。

    字段：
    - name：flag 名（不含 `--` 前缀）
    - kind：值类型
    - default：未显式给出时的默认值（repeated 类型为 tuple）
    - position：合法位置
    - commands：适用命令集合；None 表示全局适用
    - affects_server：是否参与 server 配置指纹（不同值需要不同 server）
    - help：一行说明（用于 usage 输出）
    """

    name: str
    kind: ValueKind
    default: Any = None
    position: OptionPosition = OptionPosition.STARTUP
    commands: Optional[FrozenSet[str]] = None
    affects_server: bool = False
    help: str = ""

    def __post_init__(self) -> None:
        name = str(self.name or "")
        if not name or name.startswith("-") or "=" in name or any(c.isspace() for c in name):
            raise SchemaDefinitionError(f"invalid option name: {self.name!r}")
        if self.kind == ValueKind.REPEATED_STRING:
            default = self.default if self.default is not None else ()
            if isinstance(default, str):
                raise SchemaDefinitionError(f"repeated option default must be a sequence: {name}")
            object.__setattr__(self, "default", tuple(str(x) for x in default))
        if self.kind == ValueKind.BOOLEAN and self.default is None:
            object.__setattr__(self, "default", False)
        if self.commands is not None:
            object.__setattr__(self, "commands", frozenset(self.commands))

    @property
    def repeatable(self) -> bool:
        """是否可重复出现（值累积而非覆盖）。"""

        return self.kind == ValueKind.REPEATED_STRING

    @property
    def takes_value(self) -> bool:
        """是否需要值（boolean 以外的类型都需要）。"""

        return self.kind != ValueKind.BOOLEAN

    @property
    def allowed_in_startup(self) -> bool:
        return self.position in (OptionPosition.STARTUP, OptionPosition.BOTH)

    def applies_to(self, command: Optional[str]) -> bool:
        """
        判断 flag 是否适用于给定命令。

        参数：
        - command：命令名；None 表示空命令行（仅全局 flag 适用）
        """

        if self.commands is None:
            return True
        return command is not None and command in self.commands

    def convert(self, raw: str, *, cwd: Optional[Path] = None) -> Any:
        """
        将原始文本值转换为声明类型的值。

        参数：
        - raw：命令行或 rc 文件中的原始文本
        - cwd：相对路径的解析基准（PATH 类型使用；默认当前目录）

        异常：
        - SchemaViolation：值与声明类型不符
        """

        text = str(raw)
        if self.kind == ValueKind.BOOLEAN:
            word = text.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
            raise SchemaViolation(
                f"Invalid boolean value for --{self.name}: {text!r}",
                details={"option": self.name, "value": text, "kind": self.kind.value},
            )
        if self.kind == ValueKind.INTEGER:
            try:
                return int(text.strip(), 10)
            except ValueError:
                raise SchemaViolation(
                    f"Invalid integer value for --{self.name}: {text!r}",
                    details={"option": self.name, "value": text, "kind": self.kind.value},
                ) from None
        if self.kind == ValueKind.PATH:
            if not text.strip():
                raise SchemaViolation(
                    f"Empty path value for --{self.name}",
                    details={"option": self.name, "kind": self.kind.value},
                )
            p = Path(text).expanduser()
            if not p.is_absolute():
                p = Path(cwd or Path.cwd()) / p
            return Path(p).resolve()
        return text


class OptionSchema:
    """
    不可变的 flag 注册表（name -> OptionSpec）。

    说明：
    - 构造后不可修改；组合请使用 `merged()` 生成新 schema；
    - 迭代顺序即声明顺序（用于 usage 输出与默认值填充）。
    """

    def __init__(self, specs: Iterable[OptionSpec]) -> None:
        """
        构造 schema。

        参数：
        - specs：flag 声明序列

        异常：
        - SchemaDefinitionError：同名 flag 重复声明，或元素不是 OptionSpec
        """

        by_name: Dict[str, OptionSpec] = {}
        for spec in specs:
            if not isinstance(spec, OptionSpec):
                raise SchemaDefinitionError(f"schema entries must be OptionSpec, got {type(spec).__name__}")
            if spec.name in by_name:
                raise SchemaDefinitionError(f"option defined more than once: --{spec.name}")
            by_name[spec.name] = spec
        self._specs: Mapping[str, OptionSpec] = MappingProxyType(by_name)

    def lookup(self, name: str) -> Optional[OptionSpec]:
        """按名字查找 flag；未声明返回 None。"""

        return self._specs.get(name)

    def __iter__(self) -> Iterator[OptionSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def names(self) -> List[str]:
        return list(self._specs.keys())

    def merged(self, *fragments: "OptionSchema") -> "OptionSchema":
        """
        与若干片段组合为新 schema（本 schema 在前，片段按顺序追加）。

        异常：
        - SchemaDefinitionError：片段与本 schema（或片段之间）存在同名 flag
        """

        specs: List[OptionSpec] = list(self)
        for frag in fragments:
            specs.extend(frag)
        return OptionSchema(specs)

    def defaults(self) -> Dict[str, Any]:
        """返回所有 flag 的默认值（新 dict）。"""

        return {spec.name: spec.default for spec in self}

    def server_option_names(self) -> List[str]:
        """返回参与 server 配置指纹的 flag 名（声明顺序）。"""

        return [spec.name for spec in self if spec.affects_server]

    def __repr__(self) -> str:
        return f"OptionSchema({', '.join(self._specs)})"


def fragment(*specs: OptionSpec) -> OptionSchema:
    """便捷构造：把若干 OptionSpec 组成一个 schema 片段。"""

    return OptionSchema(specs)


__all__ = ["OptionPosition", "OptionSchema", "OptionSpec", "ValueKind", "fragment"]
