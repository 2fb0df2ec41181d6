"""
启动选项（startup options）：schema 定义、命令 profile、命令行分类与 rc 文件。

说明：
- schema 是显式构造的不可变值，不存在进程级可变注册表；
- 分类器只读取 argv，不做任何 I/O。
"""

from __future__ import annotations
