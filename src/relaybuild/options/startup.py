"""
全局 startup flags 的声明。

说明：
- 这里只声明“控制 client/server 进程本身”的 flag；命令自身的参数由 server 解释；
- `affects_server=True` 的 flag 会进入 server 配置指纹：已运行 server 的指纹不一致时，
  dispatcher 会把它视为过期 server 并重启。
"""

from __future__ import annotations

from relaybuild.options.schema import OptionPosition, OptionSchema, OptionSpec, ValueKind

DEFAULT_MAX_IDLE_SECS = 3 * 60 * 60
DEFAULT_LOCK_WAIT_SECS = 60
DEFAULT_CONNECT_TIMEOUT_SECS = 10
DEFAULT_LOCAL_STARTUP_TIMEOUT_SECS = 30


def base_startup_schema() -> OptionSchema:
    """返回全局 startup flag schema（每次调用构造新值）。"""

    return OptionSchema(
        [
            OptionSpec(
                "output_base",
                ValueKind.PATH,
                affects_server=True,
                help="Output area for this workspace; overrides the derived location.",
            ),
            OptionSpec(
                "output_user_root",
                ValueKind.PATH,
                help="Per-user root under which output areas are derived.",
            ),
            OptionSpec(
                "install_base",
                ValueKind.PATH,
                affects_server=True,
                help="Install area of the server; overrides the derived location.",
            ),
            OptionSpec(
                "max_idle_secs",
                ValueKind.INTEGER,
                default=DEFAULT_MAX_IDLE_SECS,
                affects_server=True,
                help="Seconds the server stays alive without receiving commands.",
            ),
            OptionSpec(
                "server_args",
                ValueKind.REPEATED_STRING,
                affects_server=True,
                help="Extra argument passed to the server process (repeatable).",
            ),
            OptionSpec(
                "block_for_lock",
                ValueKind.BOOLEAN,
                default=True,
                help="Wait for a concurrent command on the same output base; --noblock_for_lock fails at once.",
            ),
            OptionSpec(
                "lock_wait_secs",
                ValueKind.INTEGER,
                default=DEFAULT_LOCK_WAIT_SECS,
                help="Upper bound on waiting for the output base lock.",
            ),
            OptionSpec(
                "connect_timeout_secs",
                ValueKind.INTEGER,
                default=DEFAULT_CONNECT_TIMEOUT_SECS,
                help="Timeout of the liveness probe against a running server.",
            ),
            OptionSpec(
                "local_startup_timeout_secs",
                ValueKind.INTEGER,
                default=DEFAULT_LOCAL_STARTUP_TIMEOUT_SECS,
                help="Upper bound on waiting for a freshly started server.",
            ),
            OptionSpec(
                "client_debug",
                ValueKind.BOOLEAN,
                help="Log client-side debug messages to stderr.",
            ),
            OptionSpec(
                "ignore_all_rc_files",
                ValueKind.BOOLEAN,
                help="Do not read any rc file.",
            ),
            OptionSpec(
                "rc_file",
                ValueKind.PATH,
                help="Additional rc file read after the home and workspace rc files.",
            ),
            OptionSpec(
                "home_rc",
                ValueKind.BOOLEAN,
                default=True,
                help="Read ~/.relaybuildrc.",
            ),
            OptionSpec(
                "workspace_rc",
                ValueKind.BOOLEAN,
                default=True,
                help="Read .relaybuildrc at the workspace root.",
            ),
            OptionSpec(
                "color",
                ValueKind.STRING,
                default="auto",
                position=OptionPosition.COMMAND,
                help="Output coloring (command option; must follow the command name).",
            ),
            OptionSpec(
                "config",
                ValueKind.REPEATED_STRING,
                position=OptionPosition.COMMAND,
                help="Named rc config to expand (command option; must follow the command name).",
            ),
        ]
    )


__all__ = [
    "DEFAULT_CONNECT_TIMEOUT_SECS",
    "DEFAULT_LOCAL_STARTUP_TIMEOUT_SECS",
    "DEFAULT_LOCK_WAIT_SECS",
    "DEFAULT_MAX_IDLE_SECS",
    "base_startup_schema",
]
