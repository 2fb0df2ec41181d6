"""
客户端 exit code（固定的小集合）。

说明：
- 命令自身的失败码由 server 原样透传，不在此枚举中；
- 数值与常见构建工具保持一致（2=命令行错误，8=中断，9=锁被占用，36/37=环境/server 故障）。
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """客户端自身可能返回的 exit code。"""

    SUCCESS = 0
    COMMAND_LINE_ERROR = 2
    INTERRUPTED = 8
    LOCK_CONTENTION = 9
    WORKSPACE_REQUIRED = 36
    SERVER_FAILURE = 37
