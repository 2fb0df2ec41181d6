"""
客户端配置加载器（YAML）。

设计目标：
- 内置默认配置随 package 分发（`relaybuild/assets/default.yaml`，经 `importlib.resources` 读取）；
- overlay 按顺序深度合并（后者覆盖前者），并记录叶子字段来源；
- 使用 pydantic 做 schema 校验；未知字段允许保留（避免新版本默认配置新增字段导致旧客户端加载失败）。

overlay 发现顺序（固定）：
1) `~/.config/relaybuild/client.yaml`（存在时）
2) `RELAYBUILD_CONFIG_PATHS`（逗号/分号分隔；相对路径相对当前目录）
"""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relaybuild.core.errors import ConfigError

CONFIG_PATHS_ENV = "RELAYBUILD_CONFIG_PATHS"
USER_CONFIG_RELPATH = Path(".config") / "relaybuild" / "client.yaml"


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


def _record_leaf_sources(value: Any, *, prefix: str, sources: Dict[str, str], label: str) -> None:
    """递归记录 mapping 的叶子字段来源（dotted path -> label）。"""

    if isinstance(value, Mapping):
        for k, v in value.items():
            path = f"{prefix}.{k}" if prefix else str(k)
            _record_leaf_sources(v, prefix=path, sources=sources, label=label)
        return
    sources[prefix] = label


class WorkspaceConfig(BaseModel):
    """workspace 发现配置。"""

    model_config = ConfigDict(extra="allow")

    markers: List[str] = Field(default_factory=lambda: ["WORKSPACE", "WORKSPACE.yaml"])
    rc_file_name: str = Field(default=".relaybuildrc")

    @field_validator("markers")
    @classmethod
    def _markers_non_empty(cls, v: List[str]) -> List[str]:
        cleaned = [str(x).strip() for x in v if str(x).strip()]
        if not cleaned:
            raise ValueError("workspace.markers must contain at least one name")
        return cleaned


class PathsConfig(BaseModel):
    """路径派生配置。"""

    model_config = ConfigDict(extra="allow")

    output_user_root: Optional[str] = None


class SessionConfig(BaseModel):
    """会话参数（毫秒）。超时上限由 startup flags 决定，这里只放轮询/重试节奏。"""

    model_config = ConfigDict(extra="allow")

    lock_poll_interval_ms: int = Field(default=100, ge=1)
    probe_retry_delay_ms: int = Field(default=250, ge=0)
    shutdown_wait_ms: int = Field(default=5000, ge=0)


class ServerConfig(BaseModel):
    """server 进程配置。"""

    model_config = ConfigDict(extra="allow")

    module: str = Field(default="relaybuild.runtime.server")
    engine: Optional[str] = None


class ClientConfig(BaseModel):
    """客户端配置根对象。"""

    model_config = ConfigDict(extra="allow")

    config_version: int = Field(default=1, ge=1)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


@dataclass(frozen=True)
class LoadedClientConfig:
    """
    加载结果。

    字段：
    - config：校验后的配置
    - overlay_paths：参与合并的 overlay 路径（按合并顺序）
    - sources：叶子字段来源（例如 `session.lock_poll_interval_ms` -> `overlay:/x.yaml`）
    """

    config: ClientConfig
    overlay_paths: Tuple[Path, ...]
    sources: Dict[str, str]


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    异常：
    - ConfigError：读取失败或内容不是 mapping(dict)
    """

    try:
        from importlib.resources import files

        text = files("relaybuild.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    except (OSError, ModuleNotFoundError) as exc:
        raise ConfigError("Embedded default config is not available.", details={"reason": str(exc)}) from exc
    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise ConfigError("Embedded default config root must be a mapping.")
    return obj


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件并确保根节点是 mapping(dict)；空文件返回空 dict。"""

    if not path.exists():
        raise ConfigError("Client config overlay not found.", details={"path": str(path)})
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError("Client config overlay cannot be read.", details={"path": str(path), "reason": str(exc)}) from exc
    try:
        obj = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError("Client config overlay is not valid YAML.", details={"path": str(path), "reason": str(exc)}) from exc
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError(
            "Client config overlay root must be a mapping.",
            details={"path": str(path), "actual": type(obj).__name__},
        )
    return obj


def _split_paths(raw: str) -> List[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白与空项，保序）。"""

    return [s.strip() for s in raw.replace(";", ",").split(",") if s.strip()]


def discover_overlay_paths(*, env: Optional[Mapping[str, str]] = None, home: Optional[Path] = None) -> List[Path]:
    """
    按固定顺序发现 overlay 路径（去重，保序）。

    参数：
    - env：环境变量映射；默认 `os.environ`
    - home：用户 home 目录；默认 `Path.home()`
    """

    environ = os.environ if env is None else env
    overlays: List[Path] = []

    user_cfg = (Path(home) if home is not None else Path.home()) / USER_CONFIG_RELPATH
    if user_cfg.exists():
        overlays.append(user_cfg.resolve())

    for raw in _split_paths(str(environ.get(CONFIG_PATHS_ENV) or "")):
        overlays.append(Path(raw).expanduser().resolve())

    seen: set[Path] = set()
    uniq: List[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def load_config_dicts(entries: List[Tuple[str, Dict[str, Any]]]) -> Tuple[ClientConfig, Dict[str, str]]:
    """
    合并多个 (label, dict) 配置，返回校验后的 ClientConfig 与叶子来源。

    异常：
    - ConfigError：合并结果未通过校验
    """

    merged: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for label, d in entries:
        if not d:
            continue
        _deep_merge(merged, d)
        _record_leaf_sources(d, prefix="", sources=sources, label=label)
    try:
        return ClientConfig.model_validate(merged), sources
    except ValidationError as exc:
        raise ConfigError("Client config is invalid.", details={"reason": str(exc)}) from exc


def load_client_config(*, env: Optional[Mapping[str, str]] = None, home: Optional[Path] = None) -> LoadedClientConfig:
    """
    加载内置默认配置 + overlays。

    参数：
    - env：环境变量映射；默认 `os.environ`
    - home：用户 home 目录；默认 `Path.home()`
    """

    overlay_paths = discover_overlay_paths(env=env, home=home)
    entries: List[Tuple[str, Dict[str, Any]]] = [("embedded_default", load_default_config_dict())]
    for p in overlay_paths:
        entries.append((f"overlay:{p}", _load_yaml_mapping(p)))
    config, sources = load_config_dicts(entries)
    return LoadedClientConfig(config=config, overlay_paths=tuple(overlay_paths), sources=sources)


__all__ = [
    "CONFIG_PATHS_ENV",
    "ClientConfig",
    "LoadedClientConfig",
    "discover_overlay_paths",
    "load_client_config",
    "load_config_dicts",
    "load_default_config_dict",
]
