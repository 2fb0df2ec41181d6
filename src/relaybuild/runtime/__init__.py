"""
server 会话运行时（互斥锁 / 探活 / 拉起 / 转发）。

实现定位：
- 每个 output_base 对应一个常驻 server，通过 Unix domain socket 提供 JSON RPC；
- 客户端持有 output_base 级互斥锁后才会连接或拉起 server；
- 不追求网络暴露/多租户；安全边界以 output_base 目录权限为主（socket 0600 + secret）。
"""

from __future__ import annotations
