"""
server 侧命令执行引擎。

说明：
- server 只负责会话（socket/鉴权/流式输出/取消）；命令语义由 `CommandEngine` 决定；
- 内置 `BuiltinEngine` 只实现 `version` / `info` / `shutdown`，其余命令报告“不支持”（exit 2）；
- 真实构建引擎通过配置 `server.engine: "module:attr"` 注入（attr 为无参工厂或 engine 类）。
"""

from __future__ import annotations

import importlib
import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from relaybuild.core.exit_codes import ExitCode


@dataclass
class CommandContext:
    """
    单次命令执行上下文。

    字段：
    - command_id：客户端生成的命令 id（用于 cancel）
    - name/arguments：命令名与原样参数
    - cwd：客户端当前目录
    - startup_options：与 server 相关的 startup options 子集
    - server_info：server 自身信息（workspace/output_base/install_base/pid）
    - cancel_event：被取消时置位；引擎应尽快返回
    """

    command_id: str
    name: str
    arguments: Tuple[str, ...]
    cwd: str
    startup_options: Dict[str, Any]
    server_info: Dict[str, Any]
    emit: Callable[[str, str], None]
    cancel_event: threading.Event = field(default_factory=threading.Event)
    request_shutdown: Callable[[], None] = lambda: None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def write_stdout(self, text: str) -> None:
        self.emit("stdout", str(text))

    def write_stderr(self, text: str) -> None:
        self.emit("stderr", str(text))


class CommandEngine(Protocol):
    """命令引擎协议：返回命令退出码（原样回传给客户端）。"""

    def run(self, ctx: CommandContext) -> int: ...


class BuiltinEngine:
    """内置最小引擎（无构建能力）。"""

    def run(self, ctx: CommandContext) -> int:
        if ctx.name == "version":
            from relaybuild import __version__

            ctx.write_stdout(f"relaybuild {__version__}\n")
            return int(ExitCode.SUCCESS)

        if ctx.name == "info":
            info = dict(ctx.server_info)
            info["server_pid"] = os.getpid()
            keys = list(ctx.arguments) or sorted(info)
            for key in keys:
                if key not in info:
                    ctx.write_stderr(f"ERROR: unknown info key: {key}\n")
                    return int(ExitCode.COMMAND_LINE_ERROR)
                value = info[key]
                if not isinstance(value, str):
                    value = json.dumps(value, ensure_ascii=False)
                ctx.write_stdout(f"{key}: {value}\n" if len(keys) > 1 else f"{value}\n")
            return int(ExitCode.SUCCESS)

        if ctx.name == "shutdown":
            ctx.request_shutdown()
            return int(ExitCode.SUCCESS)

        ctx.write_stderr(f"ERROR: command '{ctx.name}' is not supported by this server.\n")
        return int(ExitCode.COMMAND_LINE_ERROR)


def load_engine(spec: Optional[str]) -> CommandEngine:
    """
    按 `"module:attr"` 加载命令引擎；空值返回 `BuiltinEngine`。

    异常：
    - ValueError：格式错误，或加载结果没有 `run` 方法
    - ImportError/AttributeError：模块或属性不存在
    """

    raw = str(spec or "").strip()
    if not raw:
        return BuiltinEngine()
    module_name, sep, attr = raw.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"engine must be 'module:attr', got {raw!r}")
    target: Any = getattr(importlib.import_module(module_name), attr)
    engine = target() if callable(target) and not hasattr(target, "run") else target
    if isinstance(engine, type):
        engine = engine()
    if not callable(getattr(engine, "run", None)):
        raise ValueError(f"engine {raw!r} has no run(ctx) method")
    return engine


__all__ = ["BuiltinEngine", "CommandContext", "CommandEngine", "load_engine"]
