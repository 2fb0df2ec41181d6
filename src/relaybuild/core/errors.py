"""
客户端错误分类（异常类型）。

说明：
- 所有面向用户的错误都携带稳定错误码（英文大写下划线）、英文消息与结构化 details；
- 每类错误映射到固定 exit code，CLI 只需捕获 `FrameworkError` 即可得到退出码；
- 命令自身失败（server 返回非 0）不是异常，由 dispatcher 原样透传。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from relaybuild.core.exit_codes import ExitCode


class RelayBuildError(Exception):
    """客户端内部错误基类（不建议直接抛出）。"""


class SchemaDefinitionError(ValueError):
    """
    Option schema 定义非法（例如同名 flag 重复注册）。

    说明：
    - 属于编程错误，只会在构造 schema 时抛出；
    - 不是运行时用户错误，因此不继承 `FrameworkError`。
    """


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（用于 stderr 输出与测试断言）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(RelayBuildError):
    """结构化错误（英文 `code/message/details`）。"""

    exit_code: ExitCode = ExitCode.COMMAND_LINE_ERROR

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class SchemaViolation(FrameworkError):
    """未知/错位的 startup flag，或 flag 值与声明类型不符。"""

    exit_code = ExitCode.COMMAND_LINE_ERROR

    def __init__(self, message: str, *, code: str = "CLI_SCHEMA_VIOLATION", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details)


class WorkspaceOverrideInvalid(SchemaViolation):
    """`RELAYBUILD_WORKSPACE` 指向的目录不存在或不是目录。"""

    def __init__(self, path: str) -> None:
        super().__init__(
            "Workspace override is not an existing directory.",
            code="CLI_WORKSPACE_OVERRIDE_INVALID",
            details={"workspace": path},
        )


class ConfigError(FrameworkError):
    """客户端配置加载或校验失败。"""

    exit_code = ExitCode.COMMAND_LINE_ERROR

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code="CLI_CONFIG_INVALID", message=message, details=details)


class CommandRequiresWorkspace(FrameworkError):
    """命令需要 workspace，但当前目录不在任何 workspace 内。"""

    exit_code = ExitCode.WORKSPACE_REQUIRED

    def __init__(self, *, command: str, starting_dir: str) -> None:
        super().__init__(
            code="CLI_WORKSPACE_REQUIRED",
            message=f"The '{command}' command is only supported from within a workspace.",
            details={"command": command, "starting_dir": starting_dir},
        )


class LockContention(FrameworkError):
    """output_base 锁被其它调用持有，且超过等待上限。"""

    exit_code = ExitCode.LOCK_CONTENTION

    def __init__(self, *, lock_path: str, holder: Dict[str, Any] | None = None, waited_ms: int = 0) -> None:
        holder = holder or {}
        pid = holder.get("pid")
        who = f" (pid={pid})" if pid else ""
        super().__init__(
            code="SESSION_LOCK_CONTENTION",
            message=f"Another command{who} is running on this output base; retry later.",
            details={"lock_path": lock_path, "holder": dict(holder), "waited_ms": int(waited_ms)},
        )


class ServerUnreachable(FrameworkError):
    """已连接的 server 不可达，或在命令结束前断开。"""

    exit_code = ExitCode.SERVER_FAILURE

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code="SESSION_SERVER_UNREACHABLE", message=message, details=details)


class ServerSpawnFailure(FrameworkError):
    """server 无法启动或在启动超时内未就绪。"""

    exit_code = ExitCode.SERVER_FAILURE

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code="SESSION_SERVER_SPAWN_FAILED", message=message, details=details)


class ClientInterrupted(FrameworkError):
    """用户中断（Ctrl-C）；持有的锁已释放，运行中的命令已请求取消。"""

    exit_code = ExitCode.INTERRUPTED

    def __init__(self, *, state: str) -> None:
        super().__init__(
            code="SESSION_INTERRUPTED",
            message="Interrupted by user.",
            details={"state": state},
        )
