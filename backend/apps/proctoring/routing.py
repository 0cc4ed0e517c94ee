# -*- coding: utf-8 -*-
"""
监考 WebSocket 路由

- 选手端：一条连接对应一次作答会话
- 监考端：按比赛接收选手画面与行为事件（仅管理员）
"""

from django.urls import path

from .consumers import ParticipantSessionConsumer, ProctorMonitorConsumer

websocket_urlpatterns = [
    path(
        "ws/proctoring/contests/<int:contest_id>/session/",
        ParticipantSessionConsumer.as_asgi(),
        name="ws-proctoring-session",
    ),
    path(
        "ws/proctoring/contests/<int:contest_id>/monitor/",
        ProctorMonitorConsumer.as_asgi(),
        name="ws-proctoring-monitor",
    ),
]
