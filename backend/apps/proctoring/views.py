from __future__ import annotations

from rest_framework import serializers
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_spectacular.utils import extend_schema

from apps.common import response
from apps.common.exceptions import NotFoundError
from apps.common.permissions import IsAdmin, IsAuthenticated
from apps.common.schema_utils import api_response_schema

from . import registry
from .storage import SessionStore


def _session_view(contest_id: int, user_id: int) -> dict:
    """
    会话视图：进程内有活跃协调器时返回实时快照，否则回退到续连快照
    """
    coordinator = registry.get(contest_id, user_id)
    if coordinator is not None:
        return {"live": True, "session": coordinator.snapshot()}
    stored = SessionStore(contest_id, user_id).load_snapshot()
    if stored is None:
        raise NotFoundError(message="未找到该比赛的作答会话", extra={"contest_id": contest_id, "user_id": user_id})
    return {"live": False, "session": {"contest_id": contest_id, "user_id": user_id, **stored.to_dict()}}


_session_schema = api_response_schema(
    "ProctoringSession",
    {
        "live": serializers.BooleanField(help_text="是否有活跃连接"),
        "session": serializers.DictField(help_text="会话快照"),
    },
)


class MySessionView(APIView):
    """选手查询自己在某场比赛中的作答会话（续连前展示剩余时间、已提交题目）"""

    permission_classes = [IsAuthenticated]

    @extend_schema(summary="查询我的监考会话", request=None, responses=_session_schema)
    def get(self, request: Request, contest_id: int) -> Response:
        return response.success(_session_view(contest_id, request.user.id))


class ParticipantSessionView(APIView):
    """监考员查询指定选手的作答会话"""

    permission_classes = [IsAdmin]

    @extend_schema(summary="查询选手监考会话", request=None, responses=_session_schema)
    def get(self, request: Request, contest_id: int, user_id: int) -> Response:
        _ = request
        return response.success(_session_view(contest_id, user_id))


class LiveSessionListView(APIView):
    """监考员查看本进程内某场比赛的在线选手"""

    permission_classes = [IsAdmin]

    @extend_schema(
        summary="在线监考会话列表",
        request=None,
        responses=api_response_schema("LiveSessionList", {"items": serializers.ListField(child=serializers.DictField())}),
    )
    def get(self, request: Request, contest_id: int) -> Response:
        _ = request
        items = [
            {
                "user_id": coordinator.user_id,
                "session_id": coordinator.session.session_id,
                "status": coordinator.session.status.value,
                "remaining_seconds": coordinator.task_state.remaining_seconds if coordinator.task_state else None,
                "violation_count": coordinator.lockdown.state.violation_count if coordinator.lockdown else 0,
            }
            for coordinator in registry.in_contest(contest_id)
        ]
        items.sort(key=lambda item: item["user_id"])
        return response.success({"items": items})
