"""
CLI 模块。

说明：
- 对外入口为 `relaybuild ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册）。
- CLI 仅做“分类 + 校验 + 交给 dispatcher”，不复制 server 侧逻辑。
"""
