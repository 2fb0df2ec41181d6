"""
客户端配置（YAML overlay + pydantic 校验）。
"""

from __future__ import annotations
