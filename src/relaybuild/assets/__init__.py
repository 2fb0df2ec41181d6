"""内置默认配置资源（default.yaml）。"""
