from __future__ import annotations

from rest_framework.views import APIView
from rest_framework import serializers
from rest_framework.request import Request
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema

from apps.common import response
from apps.common.infra import redis_client
from apps.common.permissions import AllowAny
from apps.common.schema_utils import api_response_schema
from apps.proctoring import registry


class HealthCheckView(APIView):
    """
    健康检查接口
    - 用于负载均衡/监控探活，返回统一成功格式
    - 附带缓存可用性与本进程活跃会话数，不做昂贵检查
    """

    permission_classes = [AllowAny]
    authentication_classes: list = []

    @extend_schema(
        summary="健康检查",
        request=None,
        responses=api_response_schema(
            "HealthCheck",
            {
                "status": serializers.CharField(),
                "cache": serializers.CharField(),
                "live_sessions": serializers.IntegerField(),
            },
        ),
    )
    def get(self, request: Request) -> Response:
        _ = request
        cache_state = "ok" if redis_client.ping() else "unavailable"
        return response.success({"status": "ok", "cache": cache_state, "live_sessions": registry.count()})
