"""
relaybuild 客户端入口。

流程：
1) 加载客户端配置（内置默认 + overlays）；
2) 定位 workspace（`RELAYBUILD_WORKSPACE` 覆盖向上查找）；
3) 分类命令行；读取 rc 文件中的 startup 参数后重新分类（命令行优先）；
4) 校验 flag 适用性与 workspace 要求；
5) 空命令行 / `help` 打印用法；其它命令交给 `SessionDispatcher`。

约束：
- 不直接 `sys.exit`，返回 exit code，便于测试；
- 分类与 workspace 错误在客户端解决，不会触达 server。
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence, TextIO

from relaybuild.config.loader import load_client_config
from relaybuild.core.errors import FrameworkError
from relaybuild.core.exit_codes import ExitCode
from relaybuild.options.classifier import Classification, classify, validate
from relaybuild.options.commands import CommandRegistry, default_command_registry
from relaybuild.options.rc import load_rc_startup_args
from relaybuild.options.schema import OptionSpec, ValueKind
from relaybuild.runtime.dispatcher import DispatchSettings, SessionDispatcher
from relaybuild.workspace.locator import WORKSPACE_OVERRIDE_ENV, WorkspaceLocator

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(classification: Classification, stream: TextIO) -> None:
    if not classification.options["client_debug"]:
        return
    root = logging.getLogger("relaybuild")
    if any(getattr(h, "_relaybuild_client_debug", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._relaybuild_client_debug = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)


def _describe_option(spec: OptionSpec) -> str:
    if spec.kind == ValueKind.BOOLEAN:
        head = f"--[no]{spec.name}"
        default = "true" if spec.default else "false"
    else:
        head = f"--{spec.name}=<{spec.kind.value}>"
        if spec.repeatable:
            head += " (repeatable)"
        default = "none" if spec.default in (None, ()) else str(spec.default)
    line = f"  {head} (default: {default})"
    if spec.commands is not None:
        line += f" [{', '.join(sorted(spec.commands))} only]"
    if spec.help:
        line += f"\n      {spec.help}"
    return line


def render_usage(registry: CommandRegistry) -> str:
    """
    生成用法说明（由 schema 与命令注册表派生，不手写）。

    返回：
    - str：以换行结尾的多行文本
    """

    lines: List[str] = ["Usage: relaybuild <startup options> <command> <command args>", "", "Available commands:"]
    profiles = list(registry)
    width = max((len(p.name) for p in profiles), default=0)
    for p in profiles:
        lines.append(f"  {p.name.ljust(width)}  {p.help}".rstrip())
    lines.extend(["", "Startup options:"])
    for spec in registry.scan_schema():
        if spec.allowed_in_startup:
            lines.append(_describe_option(spec))
    return "\n".join(lines) + "\n"


def _print_error(exc: FrameworkError, stream: TextIO) -> None:
    stream.write(f"ERROR: {exc.message}\n")
    for key in sorted(exc.details):
        stream.write(f"  {key}: {exc.details[key]}\n")
    stream.flush()


def run_client(
    argv: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    dispatcher_factory: Optional[Callable[..., SessionDispatcher]] = None,
) -> int:
    """
    执行一次客户端调用（可注入环境，便于测试）。

    参数：
    - argv：命令行参数（不含程序名）
    - cwd/env/home：当前目录、环境变量与 home 目录；默认取进程值
    - stdout/stderr：输出流
    - dispatcher_factory：替换 `SessionDispatcher`（测试用）

    返回：
    - int：exit code
    """

    started = time.monotonic()
    env = os.environ if env is None else env
    out = stdout if stdout is not None else sys.stdout
    err = stderr if stderr is not None else sys.stderr
    try:
        config = load_client_config(env=env, home=home).config
        registry = default_command_registry()
        schema = registry.scan_schema()

        configured_root = config.paths.output_user_root
        locator = WorkspaceLocator(
            markers=config.workspace.markers,
            output_user_root=Path(configured_root) if configured_root else None,
        )
        starting_dir = Path(cwd) if cwd is not None else Path.cwd()

        # 命令行语法错误先于任何 workspace 解析报告
        classification = classify(argv, schema, starting_dir)
        _configure_logging(classification, err)

        override = env.get(WORKSPACE_OVERRIDE_ENV)
        workspace = locator.resolve(starting_dir, override=override)
        rc_args = load_rc_startup_args(
            options=classification.options,
            workspace=workspace,
            rc_file_name=config.workspace.rc_file_name,
            home=home,
        )
        if rc_args:
            classification = classify(argv, schema, workspace, rc_args=rc_args)
            _configure_logging(classification, err)

        user_root = classification.options["output_user_root"]
        if user_root is not None:
            workspace = locator.with_output_user_root(Path(user_root)).resolve(workspace.starting_dir, override=override)

        validate(classification, registry, workspace)
        command = classification.command
        if command is None or command.name == "help":
            out.write(render_usage(registry))
            out.flush()
            return int(ExitCode.SUCCESS)

        logger.debug("startup options: %r", classification.options)
        factory = dispatcher_factory or SessionDispatcher
        dispatcher = factory(
            registry=registry,
            settings=DispatchSettings.from_config(config),
            stdout=out,
            stderr=err,
        )
        return dispatcher.run(classification, workspace, started_monotonic=started)
    except FrameworkError as exc:
        logger.debug("client error %s", exc.code, exc_info=True)
        _print_error(exc, err)
        return int(exc.exit_code)
    except KeyboardInterrupt:
        err.write("ERROR: Interrupted by user.\n")
        return int(ExitCode.INTERRUPTED)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    return run_client(list(argv) if argv is not None else sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
