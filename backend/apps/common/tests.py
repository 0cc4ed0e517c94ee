# -*- coding: utf-8 -*-
"""
公共模块单测：
- 比赛后端令牌校验（角色、过期、缺少用户标识）
- REST / WebSocket 鉴权入口
- 日志脱敏与上下文注入
- 全局异常处理器、请求 ID 中间件、健康检查
- Redis 封装的降级行为
- WebSocket 连接配额的进程内回退
"""

from __future__ import annotations

import datetime
import json
import logging
from unittest import mock

import redis
from django.test import SimpleTestCase, override_settings
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.test import APIRequestFactory
from rest_framework_simplejwt.exceptions import InvalidToken
from rest_framework_simplejwt.state import token_backend

from apps.common import consumers
from apps.common.authentication import JWTAuthentication
from apps.common.exception_handler import INTERNAL_ERROR_CODE, custom_exception_handler
from apps.common.exceptions import CacheUnavailableError, SessionStateError, TokenError
from apps.common.infra import redis_client
from apps.common.infra.jwt_provider import decode_access, issue_access, user_from_token
from apps.common.infra.logger import ProctorJSONFormatter, logger_extra, sanitize_extra
from apps.common.utils.request_context import (
    bind_session_context,
    clear_request_context,
    get_request_context,
)
from apps.common.ws_auth import extract_token


class JwtProviderTests(SimpleTestCase):
    """比赛后端签发的令牌只校验不落库"""

    def test_player_token(self):
        user = user_from_token(issue_access(user_id=7, username="alice"))
        self.assertEqual(user.id, 7)
        self.assertEqual(user.username, "alice")
        self.assertTrue(user.is_authenticated)
        self.assertFalse(user.is_staff)

    def test_admin_roles(self):
        admin = user_from_token(issue_access(user_id=1, role="admin"))
        self.assertTrue(admin.is_staff)
        self.assertFalse(admin.is_superuser)
        root = user_from_token(issue_access(user_id=2, role="super_admin"))
        self.assertTrue(root.is_staff)
        self.assertTrue(root.is_superuser)

    def test_expired_token(self):
        token = issue_access(user_id=7, lifetime=datetime.timedelta(minutes=-1))
        with self.assertRaises(TokenError):
            decode_access(token)

    def test_tampered_token(self):
        header, _, signature = issue_access(user_id=7).split(".")
        _, payload, _ = issue_access(user_id=8, role="admin").split(".")
        with self.assertRaises(TokenError):
            decode_access(f"{header}.{payload}.{signature}")

    def test_missing_user_claim(self):
        token = token_backend.encode(
            {"username": "ghost", "exp": datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)}
        )
        with self.assertRaises(TokenError):
            decode_access(token)


class JWTAuthenticationTests(SimpleTestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        self.auth = JWTAuthentication()

    def tearDown(self):
        clear_request_context()

    def test_without_credentials_is_anonymous(self):
        request = self.factory.get("/api/proctoring/contests/1/session/")
        self.assertIsNone(self.auth.authenticate(request))

    def test_valid_bearer_token(self):
        token = issue_access(user_id=7, username="alice")
        request = self.factory.get("/", HTTP_AUTHORIZATION=f"Bearer {token}")
        user, payload = self.auth.authenticate(request)
        self.assertEqual(user.id, 7)
        self.assertEqual(payload["username"], "alice")
        self.assertEqual(get_request_context()["user_id"], 7)

    def test_invalid_bearer_token(self):
        request = self.factory.get("/", HTTP_AUTHORIZATION="Bearer broken")
        with self.assertRaises(TokenError):
            self.auth.authenticate(request)


class WebSocketTokenTests(SimpleTestCase):
    def test_header_takes_precedence(self):
        scope = {"headers": [(b"authorization", b"Bearer from-header")], "query_string": b"token=from-query"}
        self.assertEqual(extract_token(scope), "from-header")

    def test_query_string_fallback(self):
        self.assertEqual(extract_token({"headers": [], "query_string": b"token=abc"}), "abc")
        self.assertEqual(extract_token({}), "")


class LoggerTests(SimpleTestCase):
    def tearDown(self):
        clear_request_context()

    def test_sensitive_fields_are_masked(self):
        extra = logger_extra({"token": "t", "Code": "print(1)", "task_id": "3"})
        self.assertEqual(extra, {"token": "***", "Code": "***", "task_id": "3"})
        self.assertEqual(sanitize_extra(None), {})

    def test_session_context_in_json_log(self):
        bind_session_context(contest_id=3, session_id="abc123", user_id=7, username="alice", ip="10.0.0.1")
        record = logging.LogRecord("apps.proctoring", logging.WARNING, __file__, 1, "选手退出全屏", None, None)
        line = json.loads(ProctorJSONFormatter().format(record))
        self.assertEqual(line["contest_id"], 3)
        self.assertEqual(line["session_id"], "abc123")
        self.assertEqual(line["request_id"], "abc123")
        self.assertEqual(line["user_id"], 7)

    def test_cleared_context_is_briefly_kept(self):
        bind_session_context(contest_id=3, session_id="abc123")
        clear_request_context()
        self.assertEqual(get_request_context(include_last=False)["session_id"], "")
        self.assertEqual(get_request_context()["session_id"], "abc123")


class ExceptionHandlerTests(SimpleTestCase):
    def test_biz_error(self):
        resp = custom_exception_handler(SessionStateError(message="会话已锁定"), {})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["code"], SessionStateError.default_code)
        self.assertEqual(resp.data["message"], "会话已锁定")

    def test_simplejwt_invalid_token(self):
        resp = custom_exception_handler(InvalidToken("bad"), {})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.data["code"], TokenError.default_code)

    def test_drf_validation_error(self):
        resp = custom_exception_handler(DRFValidationError({"index": ["必须为整数"]}), {})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["message"], "必须为整数")

    def test_unexpected_error(self):
        with self.assertLogs("apps.common.exception_handler", level="ERROR"):
            resp = custom_exception_handler(RuntimeError("boom"), {})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.data["code"], INTERNAL_ERROR_CODE)
        self.assertNotIn("boom", resp.data["message"])


class HealthAndMiddlewareTests(SimpleTestCase):
    def test_health_reports_cache_state(self):
        with mock.patch("apps.common.infra.redis_client.ping", return_value=False):
            resp = self.client.get("/health/")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["status"], "ok")
        self.assertEqual(data["cache"], "unavailable")
        self.assertIn("X-Request-ID", resp)

    def test_request_id_is_echoed(self):
        with mock.patch("apps.common.infra.redis_client.ping", return_value=True):
            resp = self.client.get("/health/", HTTP_X_REQUEST_ID="req-42")
        self.assertEqual(resp["X-Request-ID"], "req-42")
        self.assertEqual(resp.json()["data"]["cache"], "ok")


class RedisClientTests(SimpleTestCase):
    """Redis 读写失败时降级，计数器失败时抛 CacheUnavailableError"""

    def setUp(self):
        self.client_mock = mock.MagicMock()
        patcher = mock.patch("apps.common.infra.redis_client._get_client", return_value=self.client_mock)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_hash_fields_are_json_decoded(self):
        self.client_mock.hgetall.return_value = {"1": json.dumps("a = 1"), "2": "{broken"}
        self.assertEqual(redis_client.hgetall_json("drafts"), {"1": "a = 1"})

    def test_read_failure_degrades(self):
        self.client_mock.get.side_effect = redis.ConnectionError("down")
        self.client_mock.hgetall.side_effect = redis.ConnectionError("down")
        self.assertIsNone(redis_client.get_json("snapshot"))
        self.assertEqual(redis_client.hgetall_json("drafts"), {})

    def test_counter_failure_raises(self):
        self.client_mock.incrby.side_effect = redis.ConnectionError("down")
        with self.assertRaises(CacheUnavailableError):
            redis_client.incr("conn", amount=1)


@override_settings(WS_MAX_CONNECTIONS_PER_USER=1, WS_MAX_CONNECTIONS_PER_IP=0)
class ConnectionQuotaTests(SimpleTestCase):
    """Redis 不可用时按进程内计数限制并发连接"""

    def setUp(self):
        consumers._user_conn_count.clear()
        consumers._ip_conn_count.clear()
        patcher = mock.patch("apps.common.infra.redis_client.incr", side_effect=CacheUnavailableError())
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_fallback_counter(self):
        self.assertTrue(consumers._register_connection(7, "10.0.0.1"))
        self.assertFalse(consumers._register_connection(7, "10.0.0.1"))
        self.assertTrue(consumers._register_connection(8, "10.0.0.1"))
        consumers._unregister_connection(7, "10.0.0.1")
        self.assertTrue(consumers._register_connection(7, "10.0.0.1"))

    def test_client_ip(self):
        self.assertEqual(consumers.client_ip({"client": ("10.0.0.2", 5123)}), "10.0.0.2")
        self.assertEqual(consumers.client_ip({}), "")
