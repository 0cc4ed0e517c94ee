from __future__ import annotations

from django.urls import path

from .views import LiveSessionListView, MySessionView, ParticipantSessionView

# 路由配置：监考会话查询接口（实时交互走 WebSocket，见 routing.py）

app_name = "proctoring"

urlpatterns = [
    # 我的会话
    path("contests/<int:contest_id>/session/", MySessionView.as_view(), name="my-session"),
    # 在线选手（监考员）
    path("contests/<int:contest_id>/sessions/", LiveSessionListView.as_view(), name="live-sessions"),
    # 指定选手会话（监考员）
    path("contests/<int:contest_id>/sessions/<int:user_id>/", ParticipantSessionView.as_view(), name="session-detail"),
]
