from __future__ import annotations

from django.utils.deprecation import MiddlewareMixin

from apps.common.utils.request_context import (
    clear_request_context,
    generate_request_id,
    get_request_context,
    set_request_context,
)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(MiddlewareMixin):
    """
    在请求生命周期内写入 request_id、方法、路径、IP，供日志过滤器使用
    - 用户信息在 DRF 认证完成后由 JWTAuthentication 补写
    - 响应头回写 X-Request-ID，便于前端与日志对齐
    """

    def process_request(self, request):
        set_request_context(
            request_id=request.headers.get(REQUEST_ID_HEADER) or generate_request_id(),
            path=getattr(request, "path", ""),
            method=getattr(request, "method", ""),
            ip=self._get_client_ip(request) or "",
        )

    @staticmethod
    def process_response(request, response):
        _ = request
        request_id = get_request_context(include_last=False).get("request_id")
        if request_id and not response.has_header(REQUEST_ID_HEADER):
            response[REQUEST_ID_HEADER] = request_id
        clear_request_context()
        return response

    @staticmethod
    def process_exception(request, exception):
        _ = request
        _ = exception
        clear_request_context()
        return None

    @staticmethod
    def _get_client_ip(request):
        xff = request.META.get("HTTP_X_FORWARDED_FOR")
        if xff:
            return xff.split(",")[0].strip()
        return request.META.get("REMOTE_ADDR", "")
