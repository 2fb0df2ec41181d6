"""
核心契约：错误分类与 exit code。
"""

from __future__ import annotations
