# -*- coding: utf-8 -*-
"""
全局 WebSocket 路由配置

- 汇总各应用的 websocket_urlpatterns
- 鉴权由 JWTAuthMiddleware 完成，权限与连接配额在 Consumer 内校验
"""

from apps.proctoring.routing import websocket_urlpatterns as proctoring_patterns

websocket_urlpatterns = [
    *proctoring_patterns,
]
