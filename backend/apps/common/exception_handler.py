"""
自定义全局异常处理器（DRF 入口）：
- 统一前端收到的错误结构，区分业务错误与系统异常
- 处理策略：
  1) BizError 及子类 → 直接转换为 {code, message, data, extra}
  2) DRF / SimpleJWT 内置异常 → 映射为 BizError，再统一输出
  3) 未知/系统异常 → 记录完整日志，返回 500 标准格式，避免泄露内部信息
"""

from typing import Any

from rest_framework import status
from rest_framework.exceptions import (
    ValidationError as DRFValidationError,
    AuthenticationFailed,
    NotAuthenticated,
    PermissionDenied as DRFPermissionDenied,
    NotFound as DRFNotFound,
    Throttled,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework_simplejwt.exceptions import InvalidToken

from .exceptions import (
    BizError,
    ValidationError as BizValidationError,
    AuthError,
    TokenError,
    PermissionDeniedError,
    NotFoundError,
    RateLimitError,
)
from .response import api_response, response_from_biz_error
from .infra.logger import get_logger, logger_extra
from .utils.request_context import get_request_context

logger = get_logger(__name__)

INTERNAL_ERROR_CODE = 50000


def _extract_message(detail: Any) -> str:
    """
    从 DRF 的 detail 结构中提取第一条可读错误信息
    detail 可能是 str / list / dict，其他结构直接 str()
    """
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list) and detail:
        return _extract_message(detail[0])
    if isinstance(detail, dict) and detail:
        return _extract_message(next(iter(detail.values())))
    return str(detail)


def _map_drf_exception_to_biz(exc: Exception) -> BizError | None:
    if isinstance(exc, InvalidToken):
        return TokenError(message="令牌无效或已过期，请重新登录")
    if isinstance(exc, DRFValidationError):
        return BizValidationError(message=_extract_message(exc.detail), extra={"raw_detail": exc.detail})
    if isinstance(exc, (AuthenticationFailed, NotAuthenticated)):
        return AuthError(message=_extract_message(getattr(exc, "detail", str(exc))))
    if isinstance(exc, DRFPermissionDenied):
        return PermissionDeniedError(message=_extract_message(getattr(exc, "detail", str(exc))))
    if isinstance(exc, DRFNotFound):
        return NotFoundError(message=_extract_message(getattr(exc, "detail", str(exc))))
    if isinstance(exc, Throttled):
        return RateLimitError(
            message=_extract_message(getattr(exc, "detail", str(exc))),
            extra={"wait": getattr(exc, "wait", None)},
        )
    return None


def _handle_unexpected_exception(exc: Exception, context: dict) -> Response:
    """
    程序 bug：记录完整堆栈，返回统一 500（不泄露内部细节）
    """
    ctx = get_request_context()
    view = context.get("view")
    logger.error(
        "接口出现未处理异常",
        exc_info=exc,
        extra=logger_extra({"view": view.__class__.__name__ if view else None}),
    )
    return api_response(
        code=INTERNAL_ERROR_CODE,
        message="内部服务器错误，请联系管理员或稍后重试",
        data=None,
        http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        extra={"request_id": ctx.get("request_id")},
    )


def custom_exception_handler(exc: Exception, context: dict) -> Response | None:
    """
    处理顺序：
    1. BizError → 直接按统一格式返回
    2. DRF / SimpleJWT 内置异常 → 映射为 BizError
    3. DRF 默认 handler 能处理的 → 包一层统一结构
    4. 其余视为系统异常，返回 500
    """
    if isinstance(exc, BizError):
        logger.info("业务异常", extra=logger_extra({"error_code": exc.code, "reason": exc.message}))
        return response_from_biz_error(exc)

    mapped = _map_drf_exception_to_biz(exc)
    if mapped is not None:
        return response_from_biz_error(mapped)

    drf_response = drf_exception_handler(exc, context)
    if drf_response is not None:
        status_code = drf_response.status_code
        return api_response(
            code=40000 if status_code < 500 else INTERNAL_ERROR_CODE,
            message=_extract_message(drf_response.data),
            data=None,
            http_status=status_code,
            extra={"raw": drf_response.data},
        )

    return _handle_unexpected_exception(exc, context)
