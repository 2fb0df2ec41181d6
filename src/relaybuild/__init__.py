"""
relaybuild client（Python）。

说明：
- 本包是 relaybuild 构建工具的客户端引导层：真正的构建在常驻 server 进程内执行。
- 客户端只负责三件事：
  - 命令行分类（startup options / command / command arguments）
  - workspace 发现（向上查找 marker，并派生 output/install 区域）
  - server 会话（互斥锁、探活、按需拉起、转发命令并流式回传输出）
- 使用手册：`README.md`；入口：`relaybuild.cli.main`。
"""

from __future__ import annotations

__version__ = "0.3.0"

from relaybuild.options.classifier import Classification, Command, ParsedStartupOptions, classify, validate
from relaybuild.options.schema import OptionPosition, OptionSchema, OptionSpec, ValueKind
from relaybuild.runtime.dispatcher import DispatchState, SessionDispatcher
from relaybuild.workspace.locator import WorkspaceLocator, WorkspaceRoot

__all__ = [
    "Classification",
    "Command",
    "DispatchState",
    "OptionPosition",
    "OptionSchema",
    "OptionSpec",
    "ParsedStartupOptions",
    "SessionDispatcher",
    "ValueKind",
    "WorkspaceLocator",
    "WorkspaceRoot",
    "__version__",
    "classify",
    "validate",
]
