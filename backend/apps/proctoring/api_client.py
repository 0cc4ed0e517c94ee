# apps/proctoring/api_client.py

from __future__ import annotations

from typing import Any, Optional

import httpx
from django.conf import settings

from apps.common.exceptions import (
    ActivityDeliveryError,
    BizError,
    ContestUnavailableError,
    SettingsFetchFailedError,
    SubmissionFailedError,
    ValidationError,
)
from apps.common.infra.logger import get_logger, logger_extra

from .schemas import ActivityEvent, ContestPlan, ContestSettings, TestResults

logger = get_logger(__name__)


class ContestApiClient:
    """
    比赛后端 REST 客户端（外部协作方）

    - 以选手自己的 Bearer Token 访问，base_url 取自 settings.CONTEST_API_BASE_URL
    - 每个方法把 httpx 异常与异常响应转换为对应的 BizError，调用方只处理业务异常
    - transport 可注入（测试中使用 httpx.MockTransport）
    """

    def __init__(
            self,
            *,
            token: str = "",
            base_url: Optional[str] = None,
            timeout: Optional[float] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or getattr(settings, "CONTEST_API_BASE_URL", "http://127.0.0.1:5000")).rstrip("/")
        self.timeout = timeout if timeout is not None else float(getattr(settings, "CONTEST_API_TIMEOUT_SECONDS", 10))
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ContestApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, error_cls: type[BizError], *, json: Any = None) -> dict:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("比赛后端请求超时", extra=logger_extra({"path": path}))
            raise error_cls(message="比赛服务响应超时") from exc
        except httpx.HTTPError as exc:
            logger.warning("比赛后端请求失败", extra=logger_extra({"path": path, "error": str(exc)}))
            raise error_cls() from exc
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.is_error:
            message = body.get("message") if isinstance(body, dict) else None
            logger.warning(
                "比赛后端返回错误",
                extra=logger_extra({"path": path, "status_code": resp.status_code, "detail": message}),
            )
            raise error_cls(message=message or None, extra={"status_code": resp.status_code})
        if not isinstance(body, dict):
            raise error_cls(message="比赛服务返回格式错误")
        if body.get("success") is False:
            raise error_cls(message=body.get("message") or None)
        return body

    # ------------------------
    # 比赛
    # ------------------------

    async def fetch_settings(self, contest_id: int) -> ContestSettings:
        """GET /api/contests/:id/settings；任何失败都抛 SettingsFetchFailedError，由调用方回退兜底设置"""
        body = await self._request("GET", f"/api/contests/{contest_id}/settings", SettingsFetchFailedError)
        raw = body.get("settings")
        if not isinstance(raw, dict):
            raise SettingsFetchFailedError(message="比赛设置缺失")
        try:
            return ContestSettings.from_dict(raw, auto_validate=True)
        except ValidationError as exc:
            raise SettingsFetchFailedError(message=exc.message) from exc

    async def fetch_contest(self, contest_id: int) -> ContestPlan:
        """GET /api/contests/:id/tasks：比赛时长（分钟）与题目列表"""
        body = await self._request("GET", f"/api/contests/{contest_id}/tasks", ContestUnavailableError)
        try:
            return ContestPlan.from_payload(contest_id, body)
        except ValidationError as exc:
            raise ContestUnavailableError(message=exc.message) from exc

    async def post_activity(self, contest_id: int, event: ActivityEvent) -> None:
        await self._request(
            "POST", f"/api/contests/{contest_id}/activity", ActivityDeliveryError, json=event.to_request_body()
        )

    # ------------------------
    # 评测
    # ------------------------

    async def run_code(self, task_id: str, code: str, language: str) -> TestResults:
        """POST /api/submissions/run：只运行样例，不计入提交"""
        body = await self._request(
            "POST",
            "/api/submissions/run",
            SubmissionFailedError,
            json={"taskId": _wire_id(task_id), "code": code, "language": language},
        )
        return self._parse_results(body)

    async def submit_code(self, contest_id: int, task_id: str, code: str, language: str) -> TestResults:
        """POST /api/submissions/submit：全部用例（含隐藏用例）评测并记录"""
        body = await self._request(
            "POST",
            "/api/submissions/submit",
            SubmissionFailedError,
            json={"taskId": _wire_id(task_id), "contestId": contest_id, "code": code, "language": language},
        )
        return self._parse_results(body)

    @staticmethod
    def _parse_results(body: dict) -> TestResults:
        data = body.get("data")
        if not isinstance(data, dict):
            raise SubmissionFailedError(message="评测结果缺失")
        try:
            return TestResults.from_dict(data, auto_validate=True)
        except ValidationError as exc:
            raise SubmissionFailedError(message=exc.message) from exc


def _wire_id(task_id: str) -> Any:
    """后端题目 id 为整数；非数字 id 原样传递"""
    return int(task_id) if str(task_id).isdigit() else task_id
