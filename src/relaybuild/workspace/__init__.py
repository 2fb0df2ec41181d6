"""
Workspace 发现与派生路径（output_base / install_base）。
"""

from __future__ import annotations
