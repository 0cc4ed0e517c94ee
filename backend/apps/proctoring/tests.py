# -*- coding: utf-8 -*-
"""
监考会话单测：
- 题目状态：切题规则、防抖草稿、计时与提交次数
- 媒体采集闸门、全屏锁定、对等连接管理器、信令通道、浏览器桥接
- 比赛后端客户端（httpx.MockTransport）
- 会话协调器完整流程：兜底设置、媒体授权、锁定、超时自动提交、续连
- WebSocket Consumer 与会话查询接口
"""

from __future__ import annotations

import asyncio
import datetime
import itertools
import json
from types import SimpleNamespace
from unittest import mock

import httpx
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.test import SimpleTestCase, override_settings
from rest_framework.test import APIClient

from apps.common.exceptions import (
    BadRequestError,
    BridgeCallError,
    BridgeTimeoutError,
    CacheUnavailableError,
    ContestUnavailableError,
    MediaPermissionError,
    SessionExpiredError,
    SessionStateError,
    SettingsFetchFailedError,
    SignalingError,
    SubmissionFailedError,
    SubmissionLimitError,
    ValidationError,
)
from apps.common import consumers as common_consumers
from apps.common.infra.jwt_provider import issue_access
from apps.common.ws_auth import JWTAuthMiddleware

from . import events, registry
from .api_client import ContestApiClient
from .bridge import BridgeMediaDevices, BrowserBridge
from .coordinator import SessionCoordinator
from .debounce import Debouncer
from .lockdown import BLOCKED_SHORTCUTS, LockdownMonitor
from .media import MediaCaptureGate
from .peers import PeerConnectionManager
from .routing import websocket_urlpatterns
from .schemas import (
    ActivityEvent,
    ContestPlan,
    ContestSettings,
    MediaKind,
    MediaStreamHandle,
    MediaTrackHandle,
    PeerState,
    PermissionState,
    Session,
    SessionStatus,
    ShiftDenyReason,
    TaskInfo,
    TestResults,
    fallback_settings,
)
from .signaling import ChannelLayerTransport, OfferMessage, SignalingChannel
from .storage import SessionSnapshot, SessionStore
from .task_state import TaskState

T0 = datetime.datetime(2026, 3, 1, 9, 0, tzinfo=datetime.timezone.utc)

CAMERA_STREAM = MediaStreamHandle(
    stream_id="cam",
    tracks=(MediaTrackHandle(track_id="v1", kind="video"), MediaTrackHandle(track_id="a1", kind="audio")),
)
SCREEN_STREAM = MediaStreamHandle(stream_id="scr", tracks=(MediaTrackHandle(track_id="s1", kind="video"),))
OFFER = {"type": "offer", "sdp": "v=0 offer"}


# ======================
# 测试替身
# ======================

class MemoryBackend:
    """SessionStore 的内存后端，写入时走一遍 JSON 以贴近 Redis 行为"""

    def __init__(self):
        self.data: dict = {}
        self.writes: dict = {}

    def get_json(self, key):
        raw = self.data.get(key)
        return None if raw is None else json.loads(raw)

    def set_json(self, key, data, ex=None):
        self.data[key] = json.dumps(data)
        self.writes[key] = self.writes.get(key, 0) + 1

    def hset_json(self, key, field, data, ex=None):
        self.data.setdefault(key, {})[field] = json.dumps(data)
        self.writes[key] = self.writes.get(key, 0) + 1

    def hgetall_json(self, key):
        return {field: json.loads(raw) for field, raw in self.data.get(key, {}).items()}

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)


class NotAllowed(Exception):
    name = "NotAllowedError"


class FakeMediaDevices:
    def __init__(self):
        self.user_error = None
        self.display_error = None
        self.user_calls = 0
        self.display_calls = 0
        self.ended = {}
        self.stopped = []

    async def get_user_media(self, constraints):
        self.user_calls += 1
        await asyncio.sleep(0.01)
        if self.user_error is not None:
            raise self.user_error
        return CAMERA_STREAM

    async def get_display_media(self, constraints):
        self.display_calls += 1
        await asyncio.sleep(0.01)
        if self.display_error is not None:
            raise self.display_error
        return SCREEN_STREAM

    def on_ended(self, stream, callback):
        self.ended[stream.stream_id] = callback

    def handle_ended(self, stream_id):
        callback = self.ended.pop(stream_id, None)
        if callback is not None:
            callback()

    def stop(self, stream):
        self.stopped.append(stream.stream_id)


class FakeDisplay:
    def __init__(self, fullscreen_ok=True):
        self.fullscreen_ok = fullscreen_ok
        self.fullscreen_requests = 0
        self.guards = None
        self.guards_removed = 0
        self.keyboard_locks = 0
        self.keyboard_unlocks = 0

    async def request_fullscreen(self):
        self.fullscreen_requests += 1
        return self.fullscreen_ok

    def install_guards(self, *, blocked_shortcuts, report_visibility, report_clipboard):
        self.guards = {
            "blocked_shortcuts": blocked_shortcuts,
            "report_visibility": report_visibility,
            "report_clipboard": report_clipboard,
        }

    def remove_guards(self):
        self.guards_removed += 1

    def lock_keyboard(self, keys):
        self.keyboard_locks += 1

    def unlock_keyboard(self):
        self.keyboard_unlocks += 1


class FakePeer:
    def __init__(self, remote_id, on_ice, fail_on=()):
        self.remote_id = remote_id
        self.on_ice = on_ice
        self.fail_on = set(fail_on)
        self.ops = []
        self.closed = False

    async def _op(self, name, *args):
        await asyncio.sleep(0)
        if name in self.fail_on:
            raise RuntimeError(name)
        self.ops.append((name, *args))

    async def add_track(self, track, stream):
        await self._op("add_track", track.track_id)

    async def set_remote_description(self, description):
        await self._op("set_remote", description["sdp"])

    async def create_answer(self):
        await self._op("create_answer")
        return {"type": "answer", "sdp": f"answer-{self.remote_id}"}

    async def set_local_description(self, description):
        await self._op("set_local", description["sdp"])

    async def add_ice_candidate(self, candidate):
        await self._op("add_ice", candidate["candidate"])

    def close(self):
        self.closed = True


class FakePeerFactory:
    def __init__(self):
        self.peers = []
        self.fail_on = ()

    async def create(self, remote_id, on_ice_candidate):
        peer = FakePeer(remote_id, on_ice_candidate, self.fail_on)
        self.peers.append(peer)
        return peer


class FakeAnswerSink:
    def __init__(self):
        self.answers = []
        self.candidates = []

    async def send_answer(self, target, payload):
        self.answers.append((target, payload))
        return True

    async def send_ice_candidate(self, target, candidate):
        self.candidates.append((target, candidate))
        return True


class FakeStreams:
    def __init__(self, streams=()):
        self.streams = list(streams)

    def granted_streams(self):
        return list(self.streams)


class FakeTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, event, data, *, target=None):
        if self.fail:
            raise RuntimeError("layer down")
        self.sent.append((event, data, target))

    def events(self):
        return [event for event, _, _ in self.sent]


class FakeLayer:
    def __init__(self):
        self.sent = []
        self.groups = []

    async def send(self, channel, message):
        self.sent.append((channel, message))

    async def group_send(self, group, message):
        self.groups.append((group, message))


class FakeApi:
    def __init__(self, *, settings=None, plan=None, settings_error=False, contest_error=False):
        self.settings = settings or ContestSettings()
        self.plan = plan or make_plan()
        self.settings_error = settings_error
        self.contest_error = contest_error
        self.results = TestResults(passed=2, total=2)
        self.runs = []
        self.submissions = []
        self.activities = []
        self.closed = False

    async def fetch_settings(self, contest_id):
        if self.settings_error:
            raise SettingsFetchFailedError()
        return self.settings

    async def fetch_contest(self, contest_id):
        if self.contest_error:
            raise ContestUnavailableError()
        return self.plan

    async def post_activity(self, contest_id, event):
        self.activities.append(event.type)

    async def run_code(self, task_id, code, language):
        self.runs.append((task_id, code, language))
        return self.results

    async def submit_code(self, contest_id, task_id, code, language):
        self.submissions.append((task_id, code, language))
        return self.results

    async def aclose(self):
        self.closed = True


def make_plan(duration=60, count=3) -> ContestPlan:
    tasks = [
        TaskInfo(
            task_id=str(i + 1),
            title=f"Task {i + 1}",
            order_index=i,
            boilerplate={"python": f"# task {i + 1}\n", "cpp": f"// task {i + 1}\n"},
        )
        for i in range(count)
    ]
    return ContestPlan(contest_id=1, title="Demo", duration_minutes=duration, tasks=tasks)


# ======================
# 题目状态
# ======================

class TaskStateTests(SimpleTestCase):
    """切题规则、草稿与提交"""

    def setUp(self):
        self.clock_now = T0
        self.activities = []
        self.backend = MemoryBackend()
        self.store = SessionStore(1, 7, backend=self.backend)

    def make_state(self, **settings_kwargs) -> TaskState:
        self.session = Session(session_id="s1", contest_id=1, user_id=7, status=SessionStatus.ACTIVE)
        return TaskState(
            session=self.session,
            plan=make_plan(),
            settings=ContestSettings(**settings_kwargs),
            store=self.store,
            emit_activity=lambda activity_type, payload: self.activities.append((activity_type, payload)),
            debounce_seconds=0.01,
            clock=lambda: self.clock_now,
        )

    def test_initial_code_is_boilerplate(self):
        state = self.make_state()
        self.assertEqual(state.draft, "# task 1\n")
        self.assertEqual(state.load_source(), "boilerplate")

    def test_must_complete_first_is_overridable(self):
        state = self.make_state(allow_task_shift=False)
        denied = state.switch_task(1)
        self.assertEqual(denied.reason, ShiftDenyReason.MUST_COMPLETE_FIRST)
        self.assertTrue(denied.overridable)
        self.assertEqual(self.session.active_task_index, 0)

        self.assertIsNone(state.switch_task(1, override=True))
        self.assertEqual(self.session.active_task_index, 1)
        self.assertEqual(state.draft, "# task 2\n")

    def test_completed_task_allows_shift_without_override(self):
        state = self.make_state(allow_task_shift=False)
        self.assertTrue(state.record_submission("1", "ok", TestResults(passed=3, total=3)))
        self.assertIn("1", self.session.completed_task_ids)
        self.assertIsNone(state.switch_task(1))

    def test_backward_after_submit_cannot_be_overridden(self):
        state = self.make_state(prevent_backward_shift_after_submission=True)
        state.record_submission("1", "attempt", TestResults(passed=1, total=2))
        self.assertIsNone(state.switch_task(1))
        denied = state.switch_task(0, override=True)
        self.assertEqual(denied.reason, ShiftDenyReason.BACKWARD_AFTER_SUBMIT)
        self.assertFalse(denied.overridable)
        self.assertEqual(self.session.active_task_index, 1)

    def test_backward_denial_takes_precedence(self):
        state = self.make_state(allow_task_shift=False, prevent_backward_shift_after_submission=True)
        state.record_submission("1", "attempt", TestResults(passed=0, total=2))
        self.assertIsNone(state.switch_task(1, override=True))
        # 当前题未完成且目标题已提交：返回不可绕过的拒绝
        denied = state.switch_task(0)
        self.assertEqual(denied.reason, ShiftDenyReason.BACKWARD_AFTER_SUBMIT)

    def test_mixed_switch_and_submit_sequences(self):
        """任意切题 / 提交组合下：下标始终有效，已提交的题目不能再切回"""
        for steps in itertools.product((0, 1, 2, "submit"), repeat=4):
            with self.subTest(steps=steps):
                state = self.make_state(allow_task_shift=False, prevent_backward_shift_after_submission=True)
                for step in steps:
                    current = self.session.active_task_index
                    if step == "submit":
                        state.record_submission(state.active_task.task_id, "attempt", TestResults(passed=0, total=2))
                    else:
                        target_id = self.session.task_order[step]
                        denied = state.switch_task(step, override=True)
                        if step != current and target_id in self.session.submitted_code_by_task:
                            self.assertEqual(denied.reason, ShiftDenyReason.BACKWARD_AFTER_SUBMIT)
                            self.assertFalse(denied.overridable)
                            self.assertEqual(self.session.active_task_index, current)
                        else:
                            self.assertIsNone(denied)
                            self.assertEqual(self.session.active_task_index, step)
                    self.assertTrue(0 <= self.session.active_task_index < len(self.session.task_order))

    def test_switch_to_same_or_invalid_index(self):
        state = self.make_state(allow_task_shift=False)
        self.assertIsNone(state.switch_task(0))
        with self.assertRaises(ValidationError):
            state.switch_task(3)
        with self.assertRaises(ValidationError):
            state.switch_task("1")

    def test_submitted_code_wins_over_draft(self):
        state = self.make_state()
        state.record_submission("1", "final", TestResults(passed=1, total=1))
        state.switch_task(1)
        state.switch_task(0)
        self.assertEqual(state.draft, "final")
        self.assertEqual(state.load_source(), "submitted")

    def test_record_submission_emits_activity(self):
        state = self.make_state()
        passed = state.record_submission("2", "x", TestResults(passed=1, total=2))
        self.assertFalse(passed)
        self.assertNotIn("2", self.session.completed_task_ids)
        self.assertEqual(self.session.submitted_code_by_task["2"], "x")
        activity_type, payload = self.activities[-1]
        self.assertEqual(activity_type, events.TASK_SUBMITTED)
        self.assertEqual(payload, {"taskId": "2", "passed": 1, "total": 2, "allPassed": False})

    def test_zero_total_is_not_completion(self):
        state = self.make_state()
        self.assertFalse(state.record_submission("1", "x", TestResults(passed=0, total=0)))

    def test_submission_limit(self):
        state = self.make_state(max_submissions_allowed=2)
        for _ in range(2):
            state.check_submission_allowed("1")
            state.record_submission("1", "x", TestResults(passed=0, total=1))
        with self.assertRaises(SubmissionLimitError):
            state.check_submission_allowed("1")
        state.check_submission_allowed("2")

    def test_select_language_replaces_untouched_boilerplate(self):
        state = self.make_state()
        self.assertEqual(state.select_language("cpp"), "// task 1\n")
        self.assertEqual(self.store.load_language(), "cpp")

    def test_select_language_keeps_edited_code(self):
        state = self.make_state()
        state.draft = "print('mine')"
        self.assertIsNone(state.select_language("cpp"))
        self.assertEqual(state.draft, "print('mine')")
        with self.assertRaises(ValidationError):
            state.select_language("  ")

    async def test_debounce_commits_only_last_edit(self):
        state = self.make_state()
        state.edit("a")
        state.edit("ab")
        state.edit("abc")
        self.assertEqual(state.draft, "abc")
        self.assertEqual(state.code, "# task 1\n")
        self.assertEqual(self.store.load_drafts(), {})

        await asyncio.sleep(0.05)
        self.assertEqual(state.code, "abc")
        self.assertEqual(self.store.load_drafts(), {"1": "abc"})
        self.assertEqual(sum(self.backend.writes.values()), 1)

    async def test_switch_flushes_pending_draft(self):
        state = self.make_state()
        state.edit("work in progress")
        state.switch_task(1)
        self.assertEqual(self.store.load_drafts()["1"], "work in progress")
        state.switch_task(0)
        self.assertEqual(state.draft, "work in progress")
        self.assertEqual(state.load_source(), "draft")

    def test_remaining_seconds(self):
        state = self.make_state()
        self.assertEqual(state.remaining_seconds, 3600)
        state.start_clock()
        self.clock_now = T0 + datetime.timedelta(minutes=59, seconds=59, milliseconds=500)
        self.assertEqual(state.remaining_seconds, 1)
        self.clock_now = T0 + datetime.timedelta(hours=2)
        self.assertEqual(state.remaining_seconds, 0)

    async def test_tick_fires_timeout_once(self):
        calls = []

        async def on_timeout():
            calls.append(self.clock_now)

        state = self.make_state()
        state._on_timeout = on_timeout
        state.start_clock()
        self.assertFalse(await state.tick())

        self.clock_now = T0 + datetime.timedelta(minutes=60)
        self.assertTrue(await state.tick())
        self.assertFalse(await state.tick())
        self.assertEqual(len(calls), 1)
        self.assertIs(self.session.status, SessionStatus.COMPLETED)
        self.assertEqual(self.session.end_reason, "timeout")
        with self.assertRaises(SessionExpiredError):
            state.ensure_time_left()


class DebouncerTests(SimpleTestCase):
    async def test_flush_and_cancel(self):
        committed = []
        debouncer = Debouncer(committed.append, delay=10)
        self.assertFalse(debouncer.flush())
        debouncer.push(1)
        debouncer.push(2)
        self.assertTrue(debouncer.pending)
        self.assertTrue(debouncer.flush())
        self.assertEqual(committed, [2])
        debouncer.push(3)
        debouncer.cancel()
        self.assertFalse(debouncer.flush())
        self.assertEqual(committed, [2])


class SessionStoreTests(SimpleTestCase):
    def test_snapshot_keeps_progress(self):
        store = SessionStore(1, 7, backend=MemoryBackend())
        store.save_snapshot(
            SessionSnapshot(
                started_at=T0,
                active_task_index=2,
                submitted_code_by_task={"1": "code"},
                completed_task_ids={"1"},
                submission_counts={"1": 2},
                violation_count=1,
            )
        )
        loaded = store.load_snapshot()
        self.assertEqual(loaded.started_at, T0)
        self.assertEqual(loaded.completed_task_ids, {"1"})
        self.assertEqual(loaded.submission_counts, {"1": 2})
        self.assertEqual(loaded.status, "")

    def test_broken_snapshot_is_ignored(self):
        backend = MemoryBackend()
        store = SessionStore(1, 7, backend=backend)
        backend.set_json("proctoring:user:7:session_1", {"started_at": "yesterday"})
        self.assertIsNone(store.load_snapshot())
        store.clear()
        self.assertEqual(backend.data, {})

    def test_drafts_are_kept_per_task(self):
        store = SessionStore(1, 7, backend=MemoryBackend())
        store.save_draft("1", "a = 1")
        store.save_draft("2", "b = 2")
        store.save_draft("1", "a = 3")
        self.assertEqual(store.load_drafts(), {"1": "a = 3", "2": "b = 2"})
        self.assertEqual(SessionStore(2, 7, backend=store.backend).load_drafts(), {})


# ======================
# 外部 payload
# ======================

class SchemaTests(SimpleTestCase):
    def test_settings_from_camel_case(self):
        settings = ContestSettings.from_dict(
            {"fullScreenModeEnabled": True, "allowCopyPaste": None, "requireCamera": True, "maxSubmissionsAllowed": "3"},
            auto_validate=True,
        )
        self.assertTrue(settings.full_screen_mode_enabled)
        self.assertTrue(settings.allow_copy_paste)
        self.assertEqual(settings.max_submissions_allowed, 3)
        self.assertEqual(settings.required_media(), frozenset({MediaKind.CAMERA}))

    def test_negative_counter_rejected(self):
        with self.assertRaises(ValidationError):
            ContestSettings.from_dict({"maxSubmissionsAllowed": -1}, auto_validate=True)

    def test_string_flag_rejected(self):
        with self.assertRaises(ValidationError):
            ContestSettings.from_dict({"fullScreenModeEnabled": "false"}, auto_validate=True)
        with self.assertRaises(ValidationError):
            ContestSettings.from_dict({"requireCamera": 1}, auto_validate=True)

    def test_fallback_settings_are_permissive_copies(self):
        first = fallback_settings()
        first.allow_task_shift = False
        second = fallback_settings()
        self.assertTrue(second.allow_task_shift)
        self.assertFalse(second.full_screen_mode_enabled)
        self.assertEqual(second.required_media(), frozenset())

    def test_activity_event_is_immutable(self):
        payload = {"violationCount": 1}
        event = ActivityEvent(type=events.EXIT_FULLSCREEN, timestamp=T0, payload=payload)
        payload["violationCount"] = 5
        self.assertEqual(event.payload["violationCount"], 1)
        with self.assertRaises(TypeError):
            event.payload["x"] = 1
        body = event.to_request_body()
        self.assertEqual(body["activityType"], events.EXIT_FULLSCREEN)
        self.assertEqual(body["severity"], "alert")
        self.assertEqual(body["violationCount"], 1)


# ======================
# 媒体 / 锁定
# ======================

class MediaCaptureGateTests(SimpleTestCase):
    def setUp(self):
        self.devices = FakeMediaDevices()
        self.changes = []
        self.gate = MediaCaptureGate(self.devices)
        self.gate.set_listener(lambda kind, entry: self.changes.append((kind, entry.state, entry.reason)))

    async def test_concurrent_requests_share_one_prompt(self):
        first, second = await asyncio.gather(
            self.gate.request_camera_and_microphone(), self.gate.request_camera_and_microphone()
        )
        self.assertEqual(self.devices.user_calls, 1)
        self.assertIs(first, second)
        await self.gate.request(MediaKind.MICROPHONE)
        self.assertEqual(self.devices.user_calls, 1)
        self.assertTrue(self.gate.all_granted({MediaKind.CAMERA, MediaKind.MICROPHONE}))

    async def test_denial_marks_both_kinds(self):
        self.devices.user_error = NotAllowed()
        with self.assertRaises(MediaPermissionError) as ctx:
            await self.gate.request_camera_and_microphone()
        self.assertEqual(ctx.exception.reason, "NotAllowedError")
        self.assertIs(self.gate.state_of(MediaKind.CAMERA), PermissionState.DENIED)
        self.assertIs(self.gate.state_of(MediaKind.MICROPHONE), PermissionState.DENIED)
        self.assertIs(self.gate.state_of(MediaKind.SCREEN), PermissionState.PENDING)

        # 拒绝后重新请求会再次弹窗
        self.devices.user_error = None
        await self.gate.request_camera_and_microphone()
        self.assertEqual(self.devices.user_calls, 2)

    async def test_screen_share_ended_demotes(self):
        await self.gate.request_screen_share()
        self.devices.handle_ended("scr")
        self.assertIs(self.gate.state_of(MediaKind.SCREEN), PermissionState.DENIED)
        self.assertEqual(self.changes[-1], (MediaKind.SCREEN, PermissionState.DENIED, "ended"))
        self.assertEqual(self.gate.granted_streams(), [])

    async def test_release_stops_each_stream_once(self):
        await self.gate.request_camera_and_microphone()
        await self.gate.request_screen_share()
        self.gate.release()
        self.gate.release()
        self.assertEqual(sorted(self.devices.stopped), ["cam", "scr"])


class LockdownMonitorTests(SimpleTestCase):
    def setUp(self):
        self.display = FakeDisplay()
        self.activities = []

    def make_monitor(self, **settings_kwargs) -> LockdownMonitor:
        return LockdownMonitor(
            self.display,
            ContestSettings(**settings_kwargs),
            emit_activity=lambda activity_type, payload: self.activities.append((activity_type, payload)),
        )

    async def test_disabled_mode_never_locks(self):
        monitor = self.make_monitor(full_screen_mode_enabled=False)
        self.assertFalse(await monitor.activate())
        monitor.fullscreen_change(False)
        monitor.visibility_change(True)
        self.assertFalse(monitor.is_locked)
        self.assertEqual(self.display.fullscreen_requests, 0)
        self.assertIsNone(self.display.guards)
        self.assertEqual(self.activities, [])

    async def test_exit_and_reenter(self):
        monitor = self.make_monitor(full_screen_mode_enabled=True)
        self.assertTrue(await monitor.activate())
        self.assertEqual(self.display.guards["blocked_shortcuts"], BLOCKED_SHORTCUTS)

        monitor.fullscreen_change(False)
        monitor.fullscreen_change(False)
        self.assertTrue(monitor.is_locked)
        self.assertFalse(monitor.state.fullscreen_active)
        self.assertEqual(monitor.state.violation_count, 1)
        self.assertEqual(self.activities, [(events.EXIT_FULLSCREEN, {"violationCount": 1})])

        self.assertTrue(await monitor.remediate())
        self.assertFalse(monitor.is_locked)
        self.assertEqual(monitor.state.violation_count, 1)
        self.assertEqual(self.display.keyboard_locks, 2)

    async def test_refused_fullscreen_does_not_lock(self):
        self.display.fullscreen_ok = False
        monitor = self.make_monitor(full_screen_mode_enabled=True)
        self.assertFalse(await monitor.activate())
        self.assertFalse(monitor.is_locked)
        self.assertEqual(monitor.state.violation_count, 0)
        self.assertEqual(self.activities, [(events.FULLSCREEN_REFUSED, {"locked": False})])

    async def test_restored_lock_waits_for_remediation(self):
        """续连恢复的锁定不会被自动全屏请求解除"""
        monitor = LockdownMonitor(
            self.display,
            ContestSettings(full_screen_mode_enabled=True),
            emit_activity=lambda activity_type, payload: self.activities.append((activity_type, payload)),
            violation_count=2,
            locked=True,
        )
        self.assertFalse(await monitor.activate())
        self.assertTrue(monitor.is_locked)
        self.assertEqual(self.display.fullscreen_requests, 0)
        self.assertIsNotNone(self.display.guards)

        self.display.fullscreen_ok = False
        self.assertFalse(await monitor.remediate())
        self.assertTrue(monitor.is_locked)
        self.assertEqual(self.activities, [(events.FULLSCREEN_REFUSED, {"locked": True})])

        self.display.fullscreen_ok = True
        self.assertTrue(await monitor.remediate())
        self.assertFalse(monitor.is_locked)
        self.assertEqual(monitor.state.violation_count, 2)

    def test_restored_lock_ignored_without_fullscreen_mode(self):
        monitor = LockdownMonitor(
            self.display, ContestSettings(), emit_activity=lambda *args: None, locked=True
        )
        self.assertFalse(monitor.is_locked)

    def test_clipboard_reporting(self):
        allowed = self.make_monitor(allow_copy_paste=True)
        self.assertIsNone(allowed.clipboard_attempt("copy"))
        blocked = self.make_monitor(allow_copy_paste=False)
        self.assertEqual(blocked.clipboard_attempt("paste"), events.PASTE_ATTEMPT)
        with self.assertRaises(ValidationError):
            blocked.clipboard_attempt("print")

    async def test_teardown_runs_once(self):
        monitor = self.make_monitor(full_screen_mode_enabled=True)
        await monitor.activate()
        monitor.teardown()
        monitor.teardown()
        self.assertEqual(self.display.guards_removed, 1)
        self.assertEqual(self.display.keyboard_unlocks, 1)
        monitor.fullscreen_change(False)
        self.assertFalse(monitor.is_locked)


# ======================
# 对等连接 / 信令
# ======================

class PeerConnectionManagerTests(SimpleTestCase):
    def setUp(self):
        self.factory = FakePeerFactory()
        self.sink = FakeAnswerSink()
        self.manager = PeerConnectionManager(self.factory, self.sink, FakeStreams([CAMERA_STREAM]))

    async def test_offer_then_candidate_in_order(self):
        self.manager.handle_remote_offer("m1", OFFER)
        self.manager.handle_remote_ice_candidate("m1", {"candidate": "c1"})
        await self.manager.drain()
        peer = self.factory.peers[0]
        self.assertEqual(
            peer.ops,
            [
                ("add_track", "v1"),
                ("add_track", "a1"),
                ("set_remote", "v=0 offer"),
                ("create_answer",),
                ("set_local", "answer-m1"),
                ("add_ice", "c1"),
            ],
        )
        self.assertEqual(self.sink.answers, [("m1", {"type": "answer", "sdp": "answer-m1"})])
        self.assertEqual(self.manager.links(), {"m1": PeerState.CONNECTED.value})

    async def test_candidate_without_link_is_dropped(self):
        self.manager.handle_remote_ice_candidate("ghost", {"candidate": "c1"})
        await self.manager.drain()
        self.assertEqual(self.factory.peers, [])

    async def test_second_offer_replaces_link(self):
        self.manager.handle_remote_offer("m1", OFFER)
        self.manager.handle_remote_offer("m1", OFFER)
        await self.manager.drain()
        first, second = self.factory.peers
        self.assertTrue(first.closed)
        self.assertFalse(second.closed)
        self.assertIs(self.manager.get_link("m1").connection, second)

        # 被替换链路的本地候选不再外发
        first.on_ice({"candidate": "stale"})
        second.on_ice({"candidate": "fresh"})
        await self.manager.drain()
        self.assertEqual(self.sink.candidates, [("m1", {"candidate": "fresh"})])

    async def test_failed_negotiation_sends_no_answer(self):
        self.factory.fail_on = ("create_answer",)
        self.manager.handle_remote_offer("m1", OFFER)
        await self.manager.drain()
        self.assertTrue(self.factory.peers[0].closed)
        self.assertEqual(self.sink.answers, [])
        self.assertIsNone(self.manager.get_link("m1"))

    async def test_links_are_independent(self):
        self.manager.handle_remote_offer("m1", OFFER)
        self.manager.handle_remote_offer("m2", OFFER)
        await self.manager.drain()
        self.manager.handle_remote_left("m1")
        await self.manager.drain()
        self.assertEqual(self.manager.links(), {"m2": PeerState.CONNECTED.value})
        self.manager.teardown_all()
        self.assertTrue(all(peer.closed for peer in self.factory.peers))
        self.manager.handle_remote_offer("m3", OFFER)
        self.assertEqual(len(self.factory.peers), 2)


class SignalingTests(SimpleTestCase):
    async def test_channel_layer_transport_targets(self):
        layer = FakeLayer()
        transport = ChannelLayerTransport(layer, contest_id=1, channel_name="me")
        await transport.send(events.ANSWER, {"target": "m1", "payload": {"sdp": "x"}}, target="m1")
        await transport.send(events.JOIN_CONTEST, {"contestId": 1, "userId": 7})
        channel, message = layer.sent[0]
        self.assertEqual(channel, "m1")
        self.assertEqual(message["type"], events.LAYER_ANSWER)
        self.assertEqual(message["sender"], "me")
        group, message = layer.groups[0]
        self.assertEqual(group, events.monitor_group(1))
        self.assertEqual(message["type"], events.LAYER_PARTICIPANT_JOINED)
        with self.assertRaises(SignalingError):
            await transport.send("unknown", {})

    async def test_malformed_offer_is_dropped(self):
        received = []
        channel = SignalingChannel(FakeTransport(), contest_id=1, user_id=7)
        channel.subscribe(OfferMessage, received.append)
        self.assertFalse(await channel.receive(events.OFFER, {"sender": "m1", "payload": {"type": "offer"}}))
        self.assertFalse(await channel.receive(events.OFFER, "garbage"))
        self.assertTrue(await channel.receive(events.OFFER, {"sender": "m1", "payload": OFFER}))
        self.assertEqual(received[0].sender, "m1")

    async def test_send_failure_is_swallowed(self):
        channel = SignalingChannel(FakeTransport(fail=True), contest_id=1, user_id=7)
        self.assertFalse(await channel.join_contest())

    async def test_activity_without_backend_delivery(self):
        delivered = []

        async def sink(event):
            delivered.append(event.type)

        transport = FakeTransport()
        channel = SignalingChannel(transport, contest_id=1, user_id=7, activity_sink=sink)
        channel.publish_activity(ActivityEvent(type=events.TAB_SWITCH), to_backend=False)
        channel.publish_activity(ActivityEvent(type=events.CONTEST_JOINED))
        await channel.aclose()
        self.assertEqual(delivered, [events.CONTEST_JOINED])
        self.assertEqual(transport.events(), [events.ACTIVITY, events.ACTIVITY])
        channel.publish_activity(ActivityEvent(type=events.TAB_FOCUS))
        self.assertEqual(len(transport.sent), 2)


# ======================
# 浏览器桥接
# ======================

class BrowserBridgeTests(SimpleTestCase):
    def setUp(self):
        self.sent = []

    async def send(self, frame):
        self.sent.append(frame)

    async def _pending_call(self, bridge, method, **kwargs):
        task = asyncio.create_task(bridge.call(method, **kwargs))
        await asyncio.sleep(0)
        await bridge.flush()
        return task, self.sent[-1]

    async def test_call_resolves(self):
        bridge = BrowserBridge(self.send, timeout=1)
        task, frame = await self._pending_call(bridge, events.RPC_REQUEST_FULLSCREEN)
        self.assertEqual(frame["event"], events.EVENT_RPC)
        self.assertTrue(bridge.resolve({"type": "rpc_result", "id": frame["id"], "ok": True, "result": True}))
        self.assertTrue(await task)
        self.assertFalse(bridge.resolve({"type": "rpc_result", "id": frame["id"], "ok": True}))
        await bridge.close()

    async def test_call_error_carries_browser_name(self):
        bridge = BrowserBridge(self.send, timeout=1)
        task, frame = await self._pending_call(bridge, events.RPC_GET_USER_MEDIA)
        bridge.resolve(
            {"type": "rpc_result", "id": frame["id"], "ok": False,
             "error": {"name": "NotAllowedError", "message": "denied"}}
        )
        with self.assertRaises(BridgeCallError) as ctx:
            await task
        self.assertEqual(ctx.exception.name, "NotAllowedError")
        await bridge.close()

    async def test_call_timeout(self):
        bridge = BrowserBridge(self.send, timeout=0.01)
        with self.assertRaises(BridgeTimeoutError):
            await bridge.call(events.RPC_REQUEST_FULLSCREEN)
        await bridge.close()

    async def test_close_fails_pending_calls(self):
        bridge = BrowserBridge(self.send, timeout=5)
        task, _ = await self._pending_call(bridge, events.RPC_PEER_CREATE)
        await bridge.close()
        with self.assertRaises(BridgeCallError):
            await task
        with self.assertRaises(BridgeCallError):
            await bridge.call(events.RPC_PEER_CREATE)

    async def test_frames_keep_order(self):
        bridge = BrowserBridge(self.send, timeout=1)
        bridge.push({"event": "a"})
        bridge.notify(events.CMD_LOCK_KEYBOARD, {"keys": []})
        bridge.push({"event": "b"})
        await bridge.flush()
        self.assertEqual([f["event"] for f in self.sent], ["a", events.EVENT_COMMAND, "b"])
        await bridge.close()

    async def test_media_devices_port(self):
        bridge = BrowserBridge(self.send, timeout=1)
        devices = BridgeMediaDevices(bridge)
        task = asyncio.create_task(devices.get_display_media({"video": True}))
        await asyncio.sleep(0)
        await bridge.flush()
        frame = self.sent[-1]
        self.assertEqual(frame["method"], events.RPC_GET_DISPLAY_MEDIA)
        bridge.resolve(
            {"type": "rpc_result", "id": frame["id"], "ok": True,
             "result": {"id": "scr", "tracks": [{"id": "s1", "kind": "video"}]}}
        )
        stream = await task
        self.assertEqual(stream, SCREEN_STREAM)

        ended = []
        devices.on_ended(stream, lambda: ended.append(True))
        self.assertTrue(devices.handle_ended("scr"))
        self.assertFalse(devices.handle_ended("scr"))
        self.assertEqual(ended, [True])
        await bridge.close()


# ======================
# 比赛后端客户端
# ======================

class ContestApiClientTests(SimpleTestCase):
    def client_for(self, handler) -> ContestApiClient:
        self.requests = []

        def record(request):
            self.requests.append(request)
            return handler(request)

        return ContestApiClient(token="tok", base_url="http://contest.test", transport=httpx.MockTransport(record))

    async def test_fetch_settings(self):
        api = self.client_for(lambda request: httpx.Response(
            200,
            json={"success": True, "settings": {"fullScreenModeEnabled": True, "allowCopyPaste": False,
                                                "maxSubmissionsAllowed": 3, "unknownField": 1}},
        ))
        async with api:
            settings = await api.fetch_settings(5)
        self.assertTrue(settings.full_screen_mode_enabled)
        self.assertFalse(settings.allow_copy_paste)
        self.assertEqual(settings.max_submissions_allowed, 3)
        request = self.requests[0]
        self.assertEqual(request.url.path, "/api/contests/5/settings")
        self.assertEqual(request.headers["Authorization"], "Bearer tok")

    async def test_settings_with_string_flags_fail(self):
        api = self.client_for(lambda request: httpx.Response(
            200, json={"success": True, "settings": {"fullScreenModeEnabled": "false"}},
        ))
        async with api:
            with self.assertRaises(SettingsFetchFailedError):
                await api.fetch_settings(5)

    async def test_settings_server_error(self):
        api = self.client_for(lambda request: httpx.Response(500, json={"message": "boom"}))
        async with api:
            with self.assertRaises(SettingsFetchFailedError):
                await api.fetch_settings(5)

    async def test_settings_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        api = self.client_for(handler)
        async with api:
            with self.assertRaises(SettingsFetchFailedError) as ctx:
                await api.fetch_settings(5)
        self.assertEqual(ctx.exception.message, "比赛服务响应超时")

    async def test_fetch_contest_sorts_tasks(self):
        api = self.client_for(lambda request: httpx.Response(200, json={
            "success": True,
            "contest": {"title": "Demo", "duration": 90},
            "tasks": [{"id": 2, "title": "B", "orderIndex": 2}, {"id": 1, "title": "A", "orderIndex": 1}],
        }))
        async with api:
            plan = await api.fetch_contest(5)
        self.assertEqual(plan.duration_minutes, 90)
        self.assertEqual([task.task_id for task in plan.tasks], ["1", "2"])

    async def test_contest_without_tasks_is_unavailable(self):
        api = self.client_for(lambda request: httpx.Response(200, json={"contest": {"duration": 90}, "tasks": []}))
        async with api:
            with self.assertRaises(ContestUnavailableError):
                await api.fetch_contest(5)

    async def test_submit_code(self):
        api = self.client_for(lambda request: httpx.Response(200, json={
            "success": True,
            "data": {"passed": 2, "total": 3, "results": [{"passed": True, "testCase": 1}]},
        }))
        async with api:
            results = await api.submit_code(5, "3", "print(1)", "python")
        body = json.loads(self.requests[0].content)
        self.assertEqual(body, {"taskId": 3, "contestId": 5, "code": "print(1)", "language": "python"})
        self.assertEqual(results.passed, 2)
        self.assertFalse(results.all_passed)
        self.assertEqual(results.results[0].test_case, 1)

    async def test_unsuccessful_body(self):
        api = self.client_for(lambda request: httpx.Response(200, json={"success": False, "message": "编译错误"}))
        async with api:
            with self.assertRaises(SubmissionFailedError) as ctx:
                await api.run_code("1", "x", "python")
        self.assertEqual(ctx.exception.message, "编译错误")

    async def test_post_activity_body(self):
        api = self.client_for(lambda request: httpx.Response(201, json={"success": True}))
        async with api:
            await api.post_activity(5, ActivityEvent(type=events.COPY_ATTEMPT, payload={"action": "copy"}))
        body = json.loads(self.requests[0].content)
        self.assertEqual(self.requests[0].url.path, "/api/contests/5/activity")
        self.assertEqual(body["type"], events.COPY_ATTEMPT)
        self.assertEqual(body["activityData"], {"action": "copy"})
        self.assertEqual(body["severity"], "warning")


# ======================
# 会话协调器
# ======================

class CoordinatorTests(SimpleTestCase):
    """协调器完整流程（浏览器端口全部替换为假对象）"""

    def setUp(self):
        self.clock_now = T0
        self.backend = MemoryBackend()

    def build(self, *, settings=None, api=None, display=None) -> SessionCoordinator:
        self.frames = []

        async def send(frame):
            self.frames.append(frame)

        self.api = api or FakeApi(settings=settings)
        self.devices = FakeMediaDevices()
        self.display = display or FakeDisplay()
        self.factory = FakePeerFactory()
        self.transport = FakeTransport()
        self.coordinator = SessionCoordinator(
            contest_id=1,
            user_id=7,
            bridge=BrowserBridge(send, timeout=1),
            transport=self.transport,
            api=self.api,
            store=SessionStore(1, 7, backend=self.backend),
            media_devices=self.devices,
            display=self.display,
            peer_factory=self.factory,
            session_id="s1",
            debounce_seconds=0.01,
            tick_seconds=3600,
            clock=lambda: self.clock_now,
        )
        return self.coordinator

    async def sent(self, event=None) -> list:
        await self.coordinator.bridge.flush()
        if event is None:
            return list(self.frames)
        return [frame for frame in self.frames if frame.get("event") == event]

    async def test_fallback_settings_without_media(self):
        coordinator = self.build(api=FakeApi(settings_error=True))
        await coordinator.start()
        self.assertEqual(coordinator.settings_source, "fallback")
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        self.assertEqual(coordinator.session.started_at, T0)
        self.assertIsNone(self.display.guards)
        editor = (await self.sent(events.EVENT_EDITOR_LOAD))[0]
        self.assertEqual(editor["code"], "# task 1\n")
        self.assertEqual(editor["source"], "boilerplate")
        self.assertIn(events.JOIN_CONTEST, self.transport.events())
        await coordinator.teardown()
        self.assertTrue(self.api.closed)

    async def test_contest_unavailable_fails_start(self):
        coordinator = self.build(api=FakeApi(contest_error=True))
        with self.assertRaises(ContestUnavailableError):
            await coordinator.start()
        await coordinator.teardown()

    async def test_media_denied_then_granted(self):
        coordinator = self.build(settings=ContestSettings(require_camera=True, require_microphone=True))
        await coordinator.start()
        self.assertIs(coordinator.session.status, SessionStatus.AWAITING_MEDIA)
        self.assertIsNone(coordinator.session.started_at)

        self.devices.user_error = NotAllowed()
        self.assertFalse(await coordinator.request_media(MediaKind.CAMERA))
        denied = await self.sent(events.EVENT_MEDIA_DENIED)
        self.assertEqual(denied[-1]["reason"], "NotAllowedError")
        self.assertIs(coordinator.session.status, SessionStatus.AWAITING_MEDIA)

        self.devices.user_error = None
        self.clock_now = T0 + datetime.timedelta(minutes=5)
        self.assertTrue(await coordinator.request_media(MediaKind.CAMERA))
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        self.assertEqual(coordinator.session.started_at, self.clock_now)
        self.assertEqual(coordinator.task_state.remaining_seconds, 3600)
        await coordinator.teardown()
        self.assertEqual(self.devices.stopped, ["cam"])

    async def test_editor_input_ignored_before_active(self):
        coordinator = self.build(settings=ContestSettings(require_screen_share=True))
        await coordinator.start()
        self.assertFalse(coordinator.handle_editor_input("x"))
        with self.assertRaises(SessionStateError):
            await coordinator.run_code()
        await coordinator.teardown()

    async def test_fullscreen_exit_locks_session(self):
        coordinator = self.build(settings=ContestSettings(full_screen_mode_enabled=True))
        await coordinator.start()
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        self.assertTrue(coordinator.lockdown.state.fullscreen_active)

        await coordinator.dispatch({"type": events.FRAME_FULLSCREEN_CHANGE, "active": False})
        self.assertIs(coordinator.session.status, SessionStatus.LOCKED)
        self.assertEqual(coordinator.lockdown.state.violation_count, 1)
        self.assertEqual(coordinator.session.activity_log[-1].type, events.EXIT_FULLSCREEN)

        self.assertFalse(coordinator.handle_editor_input("x"))
        await coordinator.dispatch({"type": events.FRAME_SWITCH_TASK, "index": 1})
        error = (await self.sent(events.EVENT_ERROR))[-1]
        self.assertEqual(error["code"], SessionStateError.default_code)
        self.assertEqual(error["operation"], events.FRAME_SWITCH_TASK)
        self.assertEqual(coordinator.session.active_task_index, 0)

        await coordinator.dispatch({"type": events.FRAME_ENTER_FULLSCREEN})
        await coordinator.wait_idle()
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        self.assertEqual(coordinator.lockdown.state.violation_count, 1)
        await coordinator.teardown()
        self.assertEqual(self.display.keyboard_unlocks, 1)

    async def test_refused_fullscreen_keeps_session_active(self):
        coordinator = self.build(
            settings=ContestSettings(full_screen_mode_enabled=True), display=FakeDisplay(fullscreen_ok=False)
        )
        await coordinator.start()
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        refused = coordinator.session.activity_log[-1]
        self.assertEqual(refused.type, events.FULLSCREEN_REFUSED)
        self.assertEqual(refused.severity, "warning")
        self.display.fullscreen_ok = True
        self.assertTrue(await coordinator.remediate_lockdown())
        await coordinator.teardown()
        self.assertIn(events.FULLSCREEN_REFUSED, self.api.activities)

    async def test_locked_session_resumes_locked(self):
        first = self.build(settings=ContestSettings(full_screen_mode_enabled=True))
        await first.start()
        first.handle_fullscreen_change(False)
        self.assertIs(first.session.status, SessionStatus.LOCKED)
        await first.teardown()
        self.assertTrue(SessionStore(1, 7, backend=self.backend).load_snapshot().locked)

        second = self.build(
            settings=ContestSettings(full_screen_mode_enabled=True), display=FakeDisplay(fullscreen_ok=False)
        )
        await second.start()
        self.assertIs(second.session.status, SessionStatus.LOCKED)
        self.assertEqual(self.display.fullscreen_requests, 0)
        self.assertEqual(second.lockdown.state.violation_count, 1)
        self.assertFalse(second.handle_editor_input("x"))
        with self.assertRaises(SessionStateError):
            second.switch_task(1)

        self.assertFalse(await second.remediate_lockdown())
        self.assertIs(second.session.status, SessionStatus.LOCKED)
        self.display.fullscreen_ok = True
        self.assertTrue(await second.remediate_lockdown())
        self.assertIs(second.session.status, SessionStatus.ACTIVE)
        self.assertFalse(SessionStore(1, 7, backend=self.backend).load_snapshot().locked)
        self.assertTrue(second.handle_editor_input("x"))
        await second.teardown()

    async def test_screen_share_denied_waits_for_media(self):
        coordinator = self.build(settings=ContestSettings(require_screen_share=True))
        await coordinator.start()
        self.devices.display_error = NotAllowed()
        self.assertFalse(await coordinator.request_media(MediaKind.SCREEN))
        self.assertIs(coordinator.session.status, SessionStatus.AWAITING_MEDIA)
        self.assertFalse(coordinator.media.all_granted(coordinator.required_media))
        denied = (await self.sent(events.EVENT_MEDIA_DENIED))[-1]
        self.assertEqual(denied["reason"], "NotAllowedError")
        self.assertIsNone(coordinator.session.started_at)
        await coordinator.teardown()

    async def test_shift_denied_frame(self):
        coordinator = self.build(settings=ContestSettings(allow_task_shift=False))
        await coordinator.start()
        denied = coordinator.switch_task(2)
        self.assertTrue(denied.overridable)
        frame = (await self.sent(events.EVENT_SHIFT_DENIED))[-1]
        self.assertEqual(frame["reason"], ShiftDenyReason.MUST_COMPLETE_FIRST.value)
        self.assertTrue(frame["overridable"])

        await coordinator.dispatch({"type": events.FRAME_SWITCH_TASK, "index": 2, "override": True})
        self.assertEqual(coordinator.session.active_task_index, 2)
        editor = (await self.sent(events.EVENT_EDITOR_LOAD))[-1]
        self.assertEqual(editor["task_id"], "3")
        await coordinator.teardown()

    async def test_submit_via_dispatch(self):
        coordinator = self.build()
        await coordinator.start()
        await coordinator.dispatch({"type": events.FRAME_EDITOR_INPUT, "code": "print(42)"})
        await coordinator.dispatch({"type": events.FRAME_SUBMIT_CODE})
        await coordinator.wait_idle()
        self.assertEqual(self.api.submissions, [("1", "print(42)", "python")])
        result = (await self.sent(events.EVENT_TEST_RESULTS))[-1]
        self.assertEqual(result["mode"], "submit")
        self.assertTrue(result["all_passed"])
        self.assertIn("1", coordinator.session.completed_task_ids)
        await coordinator.teardown()
        self.assertIn(events.TASK_SUBMITTED, self.api.activities)

    async def test_unknown_frame_reports_error(self):
        coordinator = self.build()
        await coordinator.start()
        await coordinator.dispatch({"type": "bogus"})
        await coordinator.dispatch("not a frame")
        errors = await self.sent(events.EVENT_ERROR)
        self.assertEqual(len(errors), 2)
        self.assertEqual(errors[0]["operation"], "bogus")
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        await coordinator.teardown()

    async def test_timeout_auto_submits_once(self):
        coordinator = self.build()
        concluded = []

        async def on_concluded():
            concluded.append(True)

        coordinator.on_concluded = on_concluded
        await coordinator.start()
        coordinator.handle_editor_input("print(1)")
        self.clock_now = T0 + datetime.timedelta(minutes=61)
        self.assertTrue(await coordinator.tick())
        self.assertFalse(await coordinator.tick())

        self.assertEqual(self.api.submissions, [("1", "print(1)", "python")])
        self.assertIs(coordinator.session.status, SessionStatus.COMPLETED)
        self.assertEqual(coordinator.session.end_reason, "timeout")
        self.assertEqual(concluded, [True])
        summary = (await self.sent(events.EVENT_SESSION_SUMMARY))[-1]
        self.assertTrue(summary["auto_submitted"])
        self.assertEqual(summary["reason"], "timeout")
        snapshot = SessionStore(1, 7, backend=self.backend).load_snapshot()
        self.assertEqual(snapshot.status, SessionStatus.COMPLETED.value)
        self.assertIn(events.CONTEST_COMPLETED, self.api.activities)

    async def test_timeout_skips_submit_over_limit(self):
        coordinator = self.build(settings=ContestSettings(max_submissions_allowed=1))
        await coordinator.start()
        await coordinator.submit()
        self.clock_now = T0 + datetime.timedelta(minutes=60)
        self.assertTrue(await coordinator.tick())
        self.assertEqual(len(self.api.submissions), 1)
        self.assertIs(coordinator.session.status, SessionStatus.COMPLETED)

    async def test_timeout_without_auto_submit(self):
        coordinator = self.build(settings=ContestSettings(auto_submit_on_timeout=False))
        await coordinator.start()
        self.clock_now = T0 + datetime.timedelta(minutes=60)
        await coordinator.tick()
        self.assertEqual(self.api.submissions, [])
        self.assertIs(coordinator.session.status, SessionStatus.COMPLETED)

    async def test_finish_does_not_submit(self):
        coordinator = self.build()
        await coordinator.start()
        await coordinator.finish()
        self.assertIs(coordinator.session.status, SessionStatus.COMPLETED)
        self.assertEqual(coordinator.session.end_reason, "finished")
        self.assertEqual(self.api.submissions, [])
        with self.assertRaises(SessionStateError):
            await coordinator.finish()

    async def test_resume_keeps_original_start(self):
        first = self.build()
        await first.start()
        first.switch_task(1)
        await first.teardown()
        self.assertIs(first.session.status, SessionStatus.ABORTED)
        self.assertEqual(SessionStore(1, 7, backend=self.backend).load_snapshot().status, "")

        self.clock_now = T0 + datetime.timedelta(minutes=10)
        second = self.build()
        await second.start()
        self.assertIs(second.session.status, SessionStatus.ACTIVE)
        self.assertEqual(second.session.started_at, T0)
        self.assertEqual(second.task_state.remaining_seconds, 50 * 60)
        self.assertEqual(second.session.active_task_index, 1)
        self.assertEqual(second.session.activity_log[0].payload["resumed"], True)
        await second.teardown()

    async def test_resume_after_deadline_concludes_with_timeout(self):
        first = self.build()
        await first.start()
        await first.teardown()

        self.clock_now = T0 + datetime.timedelta(minutes=120)
        second = self.build(settings=ContestSettings(require_camera=True))
        await second.start()
        self.assertIs(second.session.status, SessionStatus.COMPLETED)
        self.assertEqual(second.session.end_reason, "timeout")
        self.assertEqual(second.task_state.remaining_seconds, 0)
        self.assertEqual(len(self.api.submissions), 1)
        summary = (await self.sent(events.EVENT_SESSION_SUMMARY))[-1]
        self.assertEqual(summary["reason"], "timeout")
        snapshot = SessionStore(1, 7, backend=self.backend).load_snapshot()
        self.assertEqual(snapshot.status, SessionStatus.COMPLETED.value)

    async def test_clock_runs_while_resumed_session_awaits_media(self):
        first = self.build()
        await first.start()
        await first.teardown()

        self.clock_now = T0 + datetime.timedelta(minutes=30)
        second = self.build(settings=ContestSettings(require_camera=True))
        await second.start()
        self.assertIs(second.session.status, SessionStatus.AWAITING_MEDIA)
        self.assertEqual(second.task_state.remaining_seconds, 30 * 60)

        self.clock_now = T0 + datetime.timedelta(minutes=60)
        self.assertTrue(await second.tick())
        self.assertIs(second.session.status, SessionStatus.COMPLETED)
        self.assertEqual(second.session.end_reason, "timeout")

    async def test_finish_before_clock_starts_is_rejected(self):
        coordinator = self.build(settings=ContestSettings(require_camera=True))
        await coordinator.start()
        self.assertIs(coordinator.session.status, SessionStatus.AWAITING_MEDIA)
        with self.assertRaises(SessionStateError):
            await coordinator.finish()
        with self.assertRaises(SessionStateError):
            await coordinator.abort()
        self.assertIs(coordinator.session.status, SessionStatus.AWAITING_MEDIA)
        await coordinator.teardown()
        self.assertIsNone(SessionStore(1, 7, backend=self.backend).load_snapshot())

    async def test_aborted_session_stays_terminal(self):
        first = self.build()
        await first.start()
        await first.abort()
        self.assertIs(first.session.status, SessionStatus.ABORTED)

        second = self.build()
        await second.start()
        self.assertIs(second.session.status, SessionStatus.ABORTED)
        self.assertNotIn(events.JOIN_CONTEST, self.transport.events())
        summary = (await self.sent(events.EVENT_SESSION_SUMMARY))[-1]
        self.assertEqual(summary["status"], SessionStatus.ABORTED.value)
        await second.teardown()

    async def test_activity_logs_disabled_still_posts_critical(self):
        coordinator = self.build(
            settings=ContestSettings(enable_activity_logs=False, full_screen_mode_enabled=True)
        )
        await coordinator.start()
        coordinator.handle_visibility_change(True)
        await coordinator.teardown()
        self.assertEqual(self.api.activities, [events.CONTEST_JOINED])
        broadcast = [data["activity"]["type"] for event, data, _ in self.transport.sent if event == events.ACTIVITY]
        self.assertEqual(broadcast, [events.CONTEST_JOINED, events.TAB_SWITCH])

    async def test_offer_gets_answer_with_granted_tracks(self):
        coordinator = self.build(settings=ContestSettings(require_camera=True, require_microphone=True))
        await coordinator.start()
        await coordinator.request_media(MediaKind.CAMERA)
        await coordinator.handle_signal(events.OFFER, {"sender": "mon-1", "payload": OFFER})
        await coordinator.peers.drain()
        peer = self.factory.peers[0]
        self.assertEqual([op for op in peer.ops if op[0] == "add_track"], [("add_track", "v1"), ("add_track", "a1")])
        answers = [(data, target) for event, data, target in self.transport.sent if event == events.ANSWER]
        self.assertEqual(answers[0][1], "mon-1")

        # 已有监考连接时，新授权的媒体需要通知监考端重新 offer
        await coordinator.request_media(MediaKind.SCREEN)
        self.assertIn(events.MEDIA_UPDATED, self.transport.events())
        await coordinator.handle_signal(events.MONITOR_LEFT, {"monitorId": "mon-1"})
        await coordinator.peers.drain()
        self.assertTrue(peer.closed)
        await coordinator.teardown()

    async def test_monitor_joined_gets_targeted_announce(self):
        coordinator = self.build()
        await coordinator.start()
        await coordinator.handle_signal(events.MONITOR_JOINED, {"monitorId": "mon-2"})
        joins = [target for event, _, target in self.transport.sent if event == events.JOIN_CONTEST]
        self.assertEqual(joins, [None, "mon-2"])
        await coordinator.teardown()

    async def test_screen_share_stop_is_reported(self):
        coordinator = self.build(settings=ContestSettings(require_screen_share=True))
        await coordinator.start()
        await coordinator.request_media(MediaKind.SCREEN)
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        await coordinator.dispatch({"type": events.FRAME_MEDIA_ENDED, "stream_id": "scr"})
        self.assertIs(coordinator.media.state_of(MediaKind.SCREEN), PermissionState.DENIED)
        self.assertIs(coordinator.session.status, SessionStatus.ACTIVE)
        self.assertEqual(coordinator.session.activity_log[-1].type, events.SCREEN_SHARE_STOPPED)
        denied = (await self.sent(events.EVENT_MEDIA_DENIED))[-1]
        self.assertEqual(denied["reason"], "ended")
        await coordinator.teardown()

    async def test_teardown_is_idempotent(self):
        coordinator = self.build()
        await coordinator.start()
        await coordinator.teardown()
        await coordinator.teardown()
        self.assertEqual(self.transport.events().count(events.LEAVE_CONTEST), 1)
        await coordinator.dispatch({"type": events.FRAME_RUN_CODE})
        self.assertEqual(self.api.runs, [])


# ======================
# WebSocket / REST
# ======================

class FakeCoordinator:
    def __init__(self, user_id=7, start_error=None):
        self.contest_id = 1
        self.user_id = user_id
        self.session = SimpleNamespace(session_id=f"fake-{user_id}", status=SessionStatus.ACTIVE)
        self.task_state = None
        self.lockdown = None
        self.channel_name = ""
        self.on_concluded = None
        self.start_error = start_error
        self.started = False
        self.torn_down = False
        self.dispatched = []

    async def start(self):
        self.started = True
        if self.start_error is not None:
            raise self.start_error

    async def dispatch(self, frame):
        self.dispatched.append(frame)

    async def handle_signal(self, event, data):
        return True

    async def teardown(self):
        self.torn_down = True
        registry.unregister(self)

    def snapshot(self):
        return {"session_id": self.session.session_id, "status": "active"}


async def _wait_for(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class ProctoringConsumerTests(SimpleTestCase):
    def setUp(self):
        layers = override_settings(CHANNEL_LAYERS={"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}})
        layers.enable()
        self.addCleanup(layers.disable)
        patcher = mock.patch("apps.common.infra.redis_client.incr", side_effect=CacheUnavailableError())
        patcher.start()
        self.addCleanup(patcher.stop)
        registry.clear()
        common_consumers._user_conn_count.clear()
        common_consumers._ip_conn_count.clear()
        self.addCleanup(registry.clear)
        self.application = JWTAuthMiddleware(URLRouter(websocket_urlpatterns))
        self.player_token = issue_access(user_id=7, username="alice", role="player")
        self.admin_token = issue_access(user_id=1, username="proctor", role="admin")

    def communicator(self, path, token=None):
        if token:
            path = f"{path}?token={token}"
        return WebsocketCommunicator(self.application, path)

    async def test_anonymous_rejected(self):
        comm = self.communicator("/ws/proctoring/contests/1/session/")
        connected, code = await comm.connect()
        self.assertFalse(connected)
        self.assertEqual(code, 4401)
        await comm.disconnect()

    async def test_player_cannot_monitor(self):
        comm = self.communicator("/ws/proctoring/contests/1/monitor/", self.player_token)
        connected, code = await comm.connect()
        self.assertFalse(connected)
        self.assertEqual(code, 4403)
        await comm.disconnect()

    async def test_participant_session_lifecycle(self):
        fake = FakeCoordinator()
        builder = mock.AsyncMock(return_value=fake)
        with mock.patch("apps.proctoring.coordinator.build_coordinator", builder):
            comm = self.communicator("/ws/proctoring/contests/1/session/", self.player_token)
            connected, _ = await comm.connect()
            self.assertTrue(connected)
            self.assertTrue(await _wait_for(lambda: fake.started))
            self.assertEqual(builder.call_args.kwargs["token"], self.player_token)
            self.assertIs(registry.get(1, 7), fake)

            await comm.send_json_to({"type": events.FRAME_EDITOR_INPUT, "code": "x"})
            await comm.send_json_to({"type": "ping"})
            pong = await comm.receive_json_from()
            self.assertEqual(pong["event"], "pong")
            self.assertEqual(fake.dispatched, [{"type": events.FRAME_EDITOR_INPUT, "code": "x"}])

            await comm.disconnect()
        self.assertTrue(fake.torn_down)
        self.assertIsNone(registry.get(1, 7))

    async def test_start_failure_closes_connection(self):
        fake = FakeCoordinator(start_error=ContestUnavailableError())
        with mock.patch("apps.proctoring.coordinator.build_coordinator", mock.AsyncMock(return_value=fake)):
            comm = self.communicator("/ws/proctoring/contests/1/session/", self.player_token)
            connected, _ = await comm.connect()
            self.assertTrue(connected)
            error = await comm.receive_json_from()
            self.assertEqual(error["code"], ContestUnavailableError.default_code)
            closed = await comm.receive_output()
            self.assertEqual(closed, {"type": "websocket.close", "code": 4503})
            await comm.disconnect()

    async def test_second_connection_replaces_first(self):
        first, second = FakeCoordinator(), FakeCoordinator()
        with mock.patch("apps.proctoring.coordinator.build_coordinator", mock.AsyncMock(side_effect=[first, second])):
            comm1 = self.communicator("/ws/proctoring/contests/1/session/", self.player_token)
            self.assertTrue((await comm1.connect())[0])
            comm2 = self.communicator("/ws/proctoring/contests/1/session/", self.player_token)
            self.assertTrue((await comm2.connect())[0])

            error = await comm1.receive_json_from()
            self.assertEqual(error["code"], 4409)
            closed = await comm1.receive_output()
            self.assertEqual(closed["code"], 4409)
            self.assertTrue(first.torn_down)
            self.assertIs(registry.get(1, 7), second)
            await comm1.disconnect()
            await comm2.disconnect()

    async def test_monitor_relays_offer(self):
        layer = get_channel_layer()
        target = await layer.new_channel()
        comm = self.communicator("/ws/proctoring/contests/1/monitor/", self.admin_token)
        connected, _ = await comm.connect()
        self.assertTrue(connected)

        await comm.send_json_to({"type": events.OFFER, "target": target, "payload": OFFER})
        message = await asyncio.wait_for(layer.receive(target), timeout=1)
        self.assertEqual(message["type"], events.LAYER_OFFER)
        self.assertEqual(message["payload"], OFFER)
        self.assertTrue(message["sender"])

        await comm.send_json_to({"type": events.OFFER})
        error = await comm.receive_json_from()
        self.assertEqual(error["event"], events.EVENT_ERROR)
        self.assertEqual(error["code"], BadRequestError.default_code)
        self.assertEqual(error["message"], "信令格式错误")
        await comm.disconnect()

    async def test_monitor_receives_activity(self):
        comm = self.communicator("/ws/proctoring/contests/1/monitor/", self.admin_token)
        self.assertTrue((await comm.connect())[0])
        await comm.send_json_to({"type": "ping"})
        await comm.receive_json_from()

        await get_channel_layer().group_send(
            events.monitor_group(1),
            {
                "type": events.LAYER_ACTIVITY,
                "sender": "participant-channel",
                "userId": 7,
                "activity": {"type": events.TAB_SWITCH, "severity": "alert"},
            },
        )
        frame = await comm.receive_json_from()
        self.assertEqual(
            frame,
            {"event": events.ACTIVITY, "userId": 7, "socketId": "participant-channel",
             "type": events.TAB_SWITCH, "severity": "alert"},
        )
        await comm.disconnect()


class ProctoringApiTests(SimpleTestCase):
    def setUp(self):
        registry.clear()
        self.addCleanup(registry.clear)
        self.backend = MemoryBackend()
        patcher = mock.patch(
            "apps.proctoring.views.SessionStore",
            lambda contest_id, user_id: SessionStore(contest_id, user_id, backend=self.backend),
        )
        patcher.start()
        self.addCleanup(patcher.stop)
        self.api = APIClient()

    def auth(self, role="player", user_id=7):
        self.api.credentials(HTTP_AUTHORIZATION=f"Bearer {issue_access(user_id=user_id, role=role)}")

    def test_requires_login(self):
        resp = self.api.get("/api/proctoring/contests/1/session/")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], 40300)

    def test_missing_session(self):
        self.auth()
        resp = self.api.get("/api/proctoring/contests/1/session/")
        self.assertEqual(resp.status_code, 404)

    def test_live_session(self):
        registry.register(FakeCoordinator())
        self.auth()
        resp = self.api.get("/api/proctoring/contests/1/session/")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertTrue(data["live"])
        self.assertEqual(data["session"]["session_id"], "fake-7")

    def test_stored_session_for_proctor(self):
        SessionStore(1, 9, backend=self.backend).save_snapshot(
            SessionSnapshot(started_at=T0, status="completed", end_reason="timeout")
        )
        self.auth(role="player")
        resp = self.api.get("/api/proctoring/contests/1/sessions/9/")
        self.assertEqual(resp.status_code, 403)

        self.auth(role="admin", user_id=1)
        resp = self.api.get("/api/proctoring/contests/1/sessions/9/")
        self.assertEqual(resp.status_code, 200)
        session = resp.json()["data"]["session"]
        self.assertFalse(resp.json()["data"]["live"])
        self.assertEqual(session["status"], "completed")

    def test_live_list(self):
        registry.register(FakeCoordinator(user_id=8))
        registry.register(FakeCoordinator(user_id=7))
        self.auth(role="super_admin", user_id=1)
        resp = self.api.get("/api/proctoring/contests/1/sessions/")
        items = resp.json()["data"]["items"]
        self.assertEqual([item["user_id"] for item in items], [7, 8])

    def test_invalid_token(self):
        self.api.credentials(HTTP_AUTHORIZATION="Bearer not-a-token")
        resp = self.api.get("/api/proctoring/contests/1/session/")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["code"], 40102)
