# apps/proctoring/coordinator.py

from __future__ import annotations

import asyncio
import datetime
import uuid
from typing import Any, Awaitable, Callable, Optional

from django.conf import settings as django_settings

from apps.common.exceptions import (
    BizError,
    ConflictError,
    MediaPermissionError,
    SessionStateError,
    SettingsFetchFailedError,
    SubmissionLimitError,
    ValidationError,
)
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.time import isoformat, now

from . import events, registry
from .api_client import ContestApiClient
from .bridge import BridgeDisplay, BridgeMediaDevices, BridgePeerFactory, BrowserBridge
from .lockdown import Display, LockdownMonitor
from .media import MediaCaptureGate, MediaDevices
from .peers import PeerConnectionFactory, PeerConnectionManager
from .schemas import (
    ActivityEvent,
    ContestSettings,
    MediaKind,
    MediaPermissionState,
    PermissionState,
    Session,
    SessionStatus,
    ShiftDenied,
    TestResults,
    fallback_settings,
)
from .signaling import (
    IceCandidateMessage,
    MonitorJoinedMessage,
    MonitorLeftMessage,
    OfferMessage,
    SignalingChannel,
    SignalingTransport,
)
from .storage import SessionSnapshot, SessionStore
from .task_state import TaskState

logger = get_logger(__name__)

INTERNAL_ERROR_CODE = 50000


class SessionCoordinator:
    """
    监考会话协调器：一名选手一次作答对应一个实例，由选手端 WebSocket 连接创建并在断开时销毁

    组成：
        媒体采集闸门、信令通道、对等连接管理器、全屏锁定监控、计时与题目状态

    状态流转：
        Initializing -> AwaitingMedia -> Active <-> Locked -> Completed / Aborted
        - 必需媒体全部授权后才能进入 Active
        - Locked 期间只允许重新进入全屏，编辑/切题/运行/提交均不可用
        - 超时、主动结束 -> Completed；主动放弃 -> Aborted（均写入续连快照）
        - 连接断开只结束当前实例，不视为结束作答

    错误处理：
        dispatch 是浏览器帧的唯一入口；每个操作的失败只影响该操作，
        BizError 转为 error 帧，其他异常记录堆栈后以通用错误返回，不向外抛出
    """

    def __init__(
            self,
            *,
            contest_id: int,
            user_id: int,
            bridge: BrowserBridge,
            transport: SignalingTransport,
            api: ContestApiClient,
            store: SessionStore,
            media_devices: Optional[MediaDevices] = None,
            display: Optional[Display] = None,
            peer_factory: Optional[PeerConnectionFactory] = None,
            session_id: Optional[str] = None,
            debounce_seconds: Optional[float] = None,
            tick_seconds: Optional[float] = None,
            clock: Callable[[], datetime.datetime] = now,
    ):
        self.contest_id = contest_id
        self.user_id = user_id
        self.bridge = bridge
        self.api = api
        self.store = store
        self._clock = clock
        # 所属选手连接的 channel_name（重复连接时用于通知旧连接关闭）
        self.channel_name = ""
        self.debounce_seconds = (
            debounce_seconds
            if debounce_seconds is not None
            else float(getattr(django_settings, "PROCTORING_DEBOUNCE_SECONDS", 0.5))
        )
        self.tick_seconds = (
            tick_seconds if tick_seconds is not None else float(getattr(django_settings, "PROCTORING_TICK_SECONDS", 1.0))
        )

        self.session = Session(session_id=session_id or uuid.uuid4().hex[:12], contest_id=contest_id, user_id=user_id)
        self.settings: Optional[ContestSettings] = None
        self.settings_source = ""
        self.task_state: Optional[TaskState] = None
        self.lockdown: Optional[LockdownMonitor] = None

        prompt_timeout = getattr(django_settings, "PROCTORING_MEDIA_PROMPT_TIMEOUT_SECONDS", None)
        self.media_devices = media_devices or BridgeMediaDevices(bridge, prompt_timeout=prompt_timeout)
        self.display = display or BridgeDisplay(bridge)
        self.peer_factory = peer_factory or BridgePeerFactory(bridge)

        self.signaling = SignalingChannel(
            transport, contest_id=contest_id, user_id=user_id, activity_sink=self._deliver_activity
        )
        self.media = MediaCaptureGate(self.media_devices)
        self.media.set_listener(self._on_media_change)
        self.peers = PeerConnectionManager(self.peer_factory, self.signaling, self.media)

        self.signaling.subscribe(OfferMessage, lambda msg: self.peers.handle_remote_offer(msg.sender, msg.payload))
        self.signaling.subscribe(
            IceCandidateMessage, lambda msg: self.peers.handle_remote_ice_candidate(msg.sender, msg.candidate)
        )
        self.signaling.subscribe(MonitorLeftMessage, lambda msg: self.peers.handle_remote_left(msg.monitor_id))
        self.signaling.subscribe(MonitorJoinedMessage, self._on_monitor_joined)

        self._started = False
        self._torn_down = False
        self._auto_submitted = False
        self._ticker: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._submit_lock = asyncio.Lock()
        # 作答结束后的回调（Consumer 用于关闭连接）
        self.on_concluded: Optional[Callable[[], Awaitable[None]]] = None

    # ======================
    # 生命周期
    # ======================

    async def start(self) -> None:
        """
        拉取比赛设置（失败使用兜底设置）与题目，恢复续连快照，宣告上线，
        然后进入 AwaitingMedia 或直接进入 Active（无必需媒体时）
        """
        if self._started:
            return
        self._started = True
        try:
            self.settings = await self.api.fetch_settings(self.contest_id)
            self.settings_source = "remote"
        except SettingsFetchFailedError as exc:
            logger.warning("比赛设置获取失败，使用兜底设置", extra=logger_extra({"reason": exc.message}))
            self.settings = fallback_settings()
            self.settings_source = "fallback"

        plan = await self.api.fetch_contest(self.contest_id)
        snapshot = self.store.load_snapshot()
        self.session.task_order = [task.task_id for task in plan.tasks]
        if snapshot is not None:
            self._restore(snapshot)

        self.task_state = TaskState(
            session=self.session,
            plan=plan,
            settings=self.settings,
            store=self.store,
            emit_activity=self._record_activity,
            on_timeout=self._on_timeout,
            debounce_seconds=self.debounce_seconds,
            clock=self._clock,
        )
        if snapshot is not None:
            self.task_state.submission_counts = dict(snapshot.submission_counts)
        self.lockdown = LockdownMonitor(
            self.display,
            self.settings,
            emit_activity=self._record_activity,
            on_change=self._on_lockdown_change,
            violation_count=snapshot.violation_count if snapshot else 0,
            locked=snapshot.locked if snapshot else False,
        )

        if snapshot is not None and snapshot.status:
            # 已结束的作答直接以终止状态重新打开
            self.session.status = SessionStatus(snapshot.status)
            self.session.end_reason = snapshot.end_reason
            self.task_state.start_clock(snapshot.started_at)
            logger.info("续连到已结束的作答", extra=logger_extra({"status": snapshot.status}))
            self._push_editor()
            self._push_summary()
            self._push_state()
            return

        if snapshot is not None:
            self.task_state.start_clock(snapshot.started_at)
        await self.signaling.join_contest()
        self._record_activity(events.CONTEST_JOINED, {"resumed": snapshot is not None})
        logger.info(
            "监考会话已初始化",
            extra=logger_extra({"settings_source": self.settings_source, "resumed": snapshot is not None}),
        )
        self._push_editor()
        if snapshot is not None and await self.tick():
            # 续连时截止时间已过：不再经过媒体闸门，直接按超时结束
            return
        if self.media.all_granted(self.required_media):
            await self._activate()
        else:
            self.session.status = SessionStatus.AWAITING_MEDIA
            self._push_state()
            if snapshot is not None:
                # 已开始的作答在等待媒体授权期间照常计时
                self._start_ticker()

    def _restore(self, snapshot: SessionSnapshot) -> None:
        order = self.session.task_order
        self.session.started_at = snapshot.started_at
        self.session.submitted_code_by_task = {
            task_id: code for task_id, code in snapshot.submitted_code_by_task.items() if task_id in order
        }
        self.session.completed_task_ids = {task_id for task_id in snapshot.completed_task_ids if task_id in order}
        if 0 <= snapshot.active_task_index < len(order):
            self.session.active_task_index = snapshot.active_task_index

    async def _activate(self) -> None:
        # 以锁定状态续连时直接进入 Locked，只有重新进入全屏才能恢复 Active
        self.session.status = SessionStatus.LOCKED if self.lockdown.is_locked else SessionStatus.ACTIVE
        self.task_state.start_clock()
        self._persist()
        logger.info("监考会话已激活", extra=logger_extra({"remaining_seconds": self.task_state.remaining_seconds}))
        self._start_ticker()
        self._push_state()
        await self.lockdown.activate()
        self._push_state()

    def _start_ticker(self) -> None:
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        while not self.session.status.is_terminal and not self._torn_down:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self.tick()
            except Exception:
                logger.error("计时处理异常", exc_info=True)

    async def tick(self) -> bool:
        """推进计时；归零时执行超时策略并结束会话，返回本次是否触发超时"""
        if self.task_state is None:
            return False
        expired = await self.task_state.tick()
        if expired:
            await self._conclude()
        return expired

    async def _on_timeout(self) -> None:
        """超时策略：开启 autoSubmitOnTimeout 时强制提交当前代码（只提交一次）"""
        if not self.settings.auto_submit_on_timeout or self._auto_submitted:
            return
        self._auto_submitted = True
        try:
            await self._submit_current(forced=True)
        except BizError as exc:
            logger.warning("超时自动提交失败", extra=logger_extra({"reason": exc.message}))

    async def finish(self) -> None:
        """选手主动结束作答（作答开始计时后才能结束）"""
        self._require_status(SessionStatus.ACTIVE, SessionStatus.AWAITING_MEDIA)
        self._require_started()
        self.task_state.flush()
        self.session.status = SessionStatus.COMPLETED
        self.session.end_reason = "finished"
        await self._conclude()

    async def abort(self) -> None:
        """选手主动放弃：作答以 Aborted 结束，续连后仍为终止状态"""
        if self.session.status.is_terminal:
            raise SessionStateError(message="会话已结束")
        self._require_started()
        self.task_state.flush()
        self.session.status = SessionStatus.ABORTED
        self.session.end_reason = "abandoned"
        await self._conclude()

    async def _conclude(self) -> None:
        if self.session.status is SessionStatus.COMPLETED:
            self._record_activity(events.CONTEST_COMPLETED, {"reason": self.session.end_reason})
        self._persist(terminal=True)
        logger.info(
            "作答结束",
            extra=logger_extra({"status": self.session.status.value, "end_reason": self.session.end_reason}),
        )
        self._push_summary()
        self._push_state()
        await self.teardown()
        if self.on_concluded is not None:
            await self.on_concluded()

    async def teardown(self) -> None:
        """
        销毁会话（只执行一次）：
        提交待写草稿、移除全屏监听、同步关闭全部 PeerLink、停止本地流、离开信令、关闭浏览器桥接
        未结束的作答在本实例中记为 Aborted，但不写入终止状态
        """
        if self._torn_down:
            return
        self._torn_down = True
        current = asyncio.current_task()
        if self._ticker is not None and self._ticker is not current:
            self._ticker.cancel()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self.task_state is not None:
            self.task_state.flush()
        if not self.session.status.is_terminal:
            self.session.status = SessionStatus.ABORTED
            self.session.end_reason = self.session.end_reason or "disconnected"
            self._persist()
        if self.lockdown is not None:
            self.lockdown.teardown()
        self.peers.teardown_all()
        self.media.release()
        await self.signaling.leave_contest()
        await self.signaling.aclose()
        await self.bridge.close()
        await self.api.aclose()
        registry.unregister(self)
        logger.info("监考会话已销毁", extra=logger_extra({"status": self.session.status.value}))

    # ======================
    # 媒体
    # ======================

    @property
    def required_media(self) -> frozenset:
        return self.settings.required_media() if self.settings else frozenset()

    async def request_media(self, kind: MediaKind) -> bool:
        """请求授权；失败推送 media_denied，会话停留在 AwaitingMedia 等待重试"""
        if self.session.status.is_terminal or self.session.status is SessionStatus.INITIALIZING:
            raise SessionStateError(message="当前状态不能请求媒体授权")
        had_links = bool(self.peers.links())
        try:
            await self.media.request(kind)
        except MediaPermissionError as exc:
            self._push({"event": events.EVENT_MEDIA_DENIED, "kind": exc.kind, "reason": exc.reason})
            return False
        if self.session.status is SessionStatus.AWAITING_MEDIA and self.media.all_granted(self.required_media):
            await self._activate()
        if had_links:
            # 已有连接的监考端需要重新 offer 才能拿到新轨道
            await self.signaling.announce_media_updated()
        return True

    def _on_media_change(self, kind: MediaKind, entry: MediaPermissionState) -> None:
        if kind is MediaKind.SCREEN and entry.state is PermissionState.DENIED and entry.reason == "ended":
            self._record_activity(events.SCREEN_SHARE_STOPPED, {"required": kind in self.required_media})
            self._push({"event": events.EVENT_MEDIA_DENIED, "kind": kind.value, "reason": entry.reason})
        self._push_state()

    # ======================
    # 答题
    # ======================

    def handle_editor_input(self, code: Any) -> bool:
        """编辑器输入：非 Active（含 Locked）时静默忽略"""
        if not isinstance(code, str):
            raise ValidationError(message="代码必须为字符串")
        if self.session.status is not SessionStatus.ACTIVE or self.task_state.expired:
            logger.debug("会话不可编辑，忽略输入", extra=logger_extra({"status": self.session.status.value}))
            return False
        self.task_state.edit(code)
        return True

    def select_language(self, language: Any) -> None:
        self._require_playable()
        if not isinstance(language, str):
            raise ValidationError(message="编程语言必须为字符串")
        if self.task_state.select_language(language) is not None:
            self._push_editor()
        self._push_state()

    def switch_task(self, index: Any, *, override: bool = False) -> Optional[ShiftDenied]:
        self._require_playable()
        denied = self.task_state.switch_task(index, override=override)
        if denied is not None:
            self._push(
                {
                    "event": events.EVENT_SHIFT_DENIED,
                    "reason": denied.reason.value,
                    "target_index": denied.target_index,
                    "overridable": denied.overridable,
                }
            )
            return denied
        self._persist()
        self._push_editor()
        self._push_state()
        return None

    async def run_code(self) -> TestResults:
        self._require_playable()
        self.task_state.flush()
        task_id = self.task_state.active_task.task_id
        results = await self.api.run_code(task_id, self.task_state.draft, self.task_state.language)
        self._push_results("run", task_id, results)
        return results

    async def submit(self) -> Optional[TestResults]:
        self._require_playable()
        if self._submit_lock.locked():
            raise ConflictError(message="上一次提交仍在评测中")
        return await self._submit_current(forced=False)

    async def _submit_current(self, *, forced: bool) -> Optional[TestResults]:
        async with self._submit_lock:
            task_state = self.task_state
            task_state.flush()
            task_id = task_state.active_task.task_id
            code = task_state.draft
            try:
                task_state.check_submission_allowed(task_id)
            except SubmissionLimitError:
                if forced:
                    logger.info("已达提交次数上限，跳过自动提交", extra=logger_extra({"task_id": task_id}))
                    return None
                raise
            results = await self.api.submit_code(self.contest_id, task_id, code, task_state.language)
            passed = task_state.record_submission(task_id, code, results)
            logger.info(
                "代码已提交",
                extra=logger_extra({"task_id": task_id, "all_passed": passed, "forced": forced}),
            )
            self._persist()
            self._push_results("submit", task_id, results, forced=forced)
            self._push_state()
            return results

    # ======================
    # 全屏锁定
    # ======================

    def handle_fullscreen_change(self, active: Any) -> None:
        if self.lockdown is None or self.session.status.is_terminal:
            return
        self.lockdown.fullscreen_change(bool(active))

    def handle_visibility_change(self, hidden: Any) -> None:
        if self.lockdown is None or self.session.status.is_terminal:
            return
        self.lockdown.visibility_change(bool(hidden))

    def handle_clipboard_attempt(self, action: Any) -> Optional[str]:
        if self.lockdown is None or self.session.status.is_terminal:
            return None
        return self.lockdown.clipboard_attempt(str(action or ""))

    async def remediate_lockdown(self) -> bool:
        """重新进入全屏（Locked 状态下唯一可用的操作，也用于首次进入失败后的手动重试）"""
        self._require_status(SessionStatus.ACTIVE, SessionStatus.LOCKED)
        ok = await self.lockdown.remediate()
        self._push_state()
        return ok

    def _on_lockdown_change(self) -> None:
        status = self.session.status
        if self.lockdown.is_locked and status is SessionStatus.ACTIVE:
            self.session.status = SessionStatus.LOCKED
            self._persist()
        elif not self.lockdown.is_locked and status is SessionStatus.LOCKED:
            self.session.status = SessionStatus.ACTIVE
            self._persist()
        self._push_state()

    # ======================
    # 信令
    # ======================

    async def handle_signal(self, event: str, data: dict) -> bool:
        """监考端经 channel layer 转来的信令"""
        if self._torn_down:
            return False
        return await self.signaling.receive(event, data)

    async def _on_monitor_joined(self, message: MonitorJoinedMessage) -> None:
        if self.session.status.is_terminal or self.session.status is SessionStatus.INITIALIZING:
            return
        await self.signaling.join_contest(target=message.monitor_id)

    # ======================
    # 行为事件
    # ======================

    def _record_activity(self, activity_type: str, payload: dict) -> None:
        event = ActivityEvent(type=activity_type, timestamp=self._clock(), payload=payload)
        self.session.activity_log.append(event)
        to_backend = (self.settings is None or self.settings.enable_activity_logs
                      or activity_type in events.CRITICAL_ACTIVITIES)
        self.signaling.publish_activity(event, to_backend=to_backend)

    async def _deliver_activity(self, event: ActivityEvent) -> None:
        await self.api.post_activity(self.contest_id, event)

    # ======================
    # 浏览器帧分发
    # ======================

    async def dispatch(self, frame: Any) -> None:
        """
        浏览器帧唯一入口
        - rpc_result 与平台通知立即处理
        - 用户操作派生为独立任务执行（操作内部还要等待浏览器 RPC 回复，不能阻塞接收）
        """
        if not isinstance(frame, dict):
            self._push_error(ValidationError(message="消息格式错误"), operation="")
            return
        frame_type = frame.get("type")
        if frame_type == events.FRAME_RPC_RESULT:
            self.bridge.resolve(frame)
            return
        if self._torn_down:
            return

        handler = self._sync_handlers().get(frame_type)
        if handler is not None:
            self._guard_sync(frame_type, handler, frame)
            return
        factory = self._async_handlers().get(frame_type)
        if factory is not None:
            self._spawn(frame_type, factory, frame)
            return
        self._push_error(ValidationError(message="未知的消息类型"), operation=str(frame_type or ""))

    def _sync_handlers(self) -> dict[str, Callable[[dict], Any]]:
        return {
            events.FRAME_MEDIA_ENDED: lambda f: self._route_media_ended(f.get("stream_id")),
            events.FRAME_PEER_ICE: lambda f: self._route_peer_ice(f.get("peer_id"), f.get("candidate")),
            events.FRAME_FULLSCREEN_CHANGE: lambda f: self.handle_fullscreen_change(f.get("active")),
            events.FRAME_VISIBILITY_CHANGE: lambda f: self.handle_visibility_change(f.get("hidden")),
            events.FRAME_CLIPBOARD: lambda f: self.handle_clipboard_attempt(f.get("action")),
            events.FRAME_EDITOR_INPUT: lambda f: self.handle_editor_input(f.get("code")),
            events.FRAME_SWITCH_TASK: lambda f: self.switch_task(f.get("index"), override=bool(f.get("override"))),
            events.FRAME_SELECT_LANGUAGE: lambda f: self.select_language(f.get("language")),
        }

    def _async_handlers(self) -> dict[str, Callable[[dict], Awaitable[Any]]]:
        return {
            events.FRAME_REQUEST_MEDIA: lambda f: self.request_media(_media_kind(f.get("kind"))),
            events.FRAME_ENTER_FULLSCREEN: lambda f: self.remediate_lockdown(),
            events.FRAME_RUN_CODE: lambda f: self.run_code(),
            events.FRAME_SUBMIT_CODE: lambda f: self.submit(),
            events.FRAME_FINISH: lambda f: self.finish(),
            events.FRAME_ABORT: lambda f: self.abort(),
        }

    def _route_media_ended(self, stream_id: Any) -> None:
        handle_ended = getattr(self.media_devices, "handle_ended", None)
        if handle_ended is not None and stream_id:
            handle_ended(str(stream_id))

    def _route_peer_ice(self, peer_id: Any, candidate: Any) -> None:
        handle_local_ice = getattr(self.peer_factory, "handle_local_ice", None)
        if handle_local_ice is not None and peer_id:
            handle_local_ice(str(peer_id), candidate)

    def _guard_sync(self, operation: str, handler: Callable[[dict], Any], frame: dict) -> None:
        try:
            handler(frame)
        except BizError as exc:
            self._push_error(exc, operation=operation)
        except Exception:
            logger.error("会话操作异常", extra=logger_extra({"operation": operation}), exc_info=True)
            self._push_internal_error(operation)

    def _spawn(self, operation: str, factory: Callable[[dict], Awaitable[Any]], frame: dict) -> asyncio.Task:
        async def runner():
            try:
                await factory(frame)
            except asyncio.CancelledError:
                raise
            except BizError as exc:
                self._push_error(exc, operation=operation)
            except Exception:
                logger.error("会话操作异常", extra=logger_extra({"operation": operation}), exc_info=True)
                self._push_internal_error(operation)

        task = asyncio.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """等待已派生的操作全部完成"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _require_status(self, *allowed: SessionStatus) -> None:
        if self.session.status not in allowed:
            raise SessionStateError(extra={"status": self.session.status.value})

    def _require_started(self) -> None:
        # 续连快照以 started_at 为键信息，未开始计时的作答无法记录终止状态
        if self.session.started_at is None:
            raise SessionStateError(message="作答尚未开始", extra={"status": self.session.status.value})

    def _require_playable(self) -> None:
        if self.session.status is SessionStatus.LOCKED:
            raise SessionStateError(message="会话已锁定，请先重新进入全屏", extra={"status": "locked"})
        self._require_status(SessionStatus.ACTIVE)
        self.task_state.ensure_time_left()

    # ======================
    # 读出 / 推送
    # ======================

    def snapshot(self) -> dict:
        task_state = self.task_state
        return {
            "session_id": self.session.session_id,
            "contest_id": self.contest_id,
            "user_id": self.user_id,
            "status": self.session.status.value,
            "end_reason": self.session.end_reason,
            "started_at": isoformat(self.session.started_at),
            "expires_at": isoformat(self.session.expires_at),
            "remaining_seconds": task_state.remaining_seconds if task_state else None,
            "settings_source": self.settings_source,
            "settings": self.settings.to_payload() if self.settings else None,
            "required_media": sorted(kind.value for kind in self.required_media),
            "media": self.media.snapshot(),
            "tasks": task_state.snapshot() if task_state else None,
            "lockdown": self.lockdown.snapshot() if self.lockdown else None,
            "peers": self.peers.links(),
            "activity_count": len(self.session.activity_log),
        }

    def _persist(self, *, terminal: bool = False) -> None:
        if self.task_state is None or self.session.started_at is None:
            return
        self.store.save_snapshot(
            SessionSnapshot(
                started_at=self.session.started_at,
                active_task_index=self.session.active_task_index,
                submitted_code_by_task=dict(self.session.submitted_code_by_task),
                completed_task_ids=set(self.session.completed_task_ids),
                submission_counts=dict(self.task_state.submission_counts),
                violation_count=self.lockdown.state.violation_count if self.lockdown else 0,
                locked=self.lockdown.is_locked if self.lockdown else False,
                status=self.session.status.value if terminal else "",
                end_reason=self.session.end_reason if terminal else "",
            )
        )

    def _push(self, frame: dict) -> None:
        if not self.bridge.closed:
            self.bridge.push(frame)

    def _push_state(self) -> None:
        self._push({"event": events.EVENT_SESSION_STATE, "session": self.snapshot()})

    def _push_editor(self) -> None:
        task_state = self.task_state
        self._push(
            {
                "event": events.EVENT_EDITOR_LOAD,
                "task_id": task_state.active_task.task_id,
                "code": task_state.draft,
                "language": task_state.language,
                "source": task_state.load_source(),
            }
        )

    def _push_results(self, mode: str, task_id: str, results: TestResults, *, forced: bool = False) -> None:
        self._push(
            {
                "event": events.EVENT_TEST_RESULTS,
                "mode": mode,
                "task_id": task_id,
                "forced": forced,
                "results": results.to_payload(),
                "all_passed": results.all_passed,
            }
        )

    def _push_summary(self) -> None:
        self._push(
            {
                "event": events.EVENT_SESSION_SUMMARY,
                "status": self.session.status.value,
                "reason": self.session.end_reason,
                "completed_task_ids": sorted(self.session.completed_task_ids),
                "submitted_task_ids": sorted(self.session.submitted_code_by_task),
                "auto_submitted": self._auto_submitted,
                "violation_count": self.lockdown.state.violation_count if self.lockdown else 0,
            }
        )

    def _push_error(self, exc: BizError, *, operation: str) -> None:
        logger.info(
            "会话操作失败",
            extra=logger_extra({"operation": operation, "error_code": exc.code, "reason": exc.message}),
        )
        self._push(
            {
                "event": events.EVENT_ERROR,
                "code": exc.code,
                "message": exc.message,
                "operation": operation,
                "extra": exc.extra,
            }
        )

    def _push_internal_error(self, operation: str) -> None:
        self._push(
            {
                "event": events.EVENT_ERROR,
                "code": INTERNAL_ERROR_CODE,
                "message": "服务器内部错误",
                "operation": operation,
            }
        )


def _media_kind(value: Any) -> MediaKind:
    try:
        return MediaKind(value)
    except ValueError as exc:
        raise ValidationError(message="未知的媒体类型", extra={"kind": value}) from exc


async def build_coordinator(
        *,
        contest_id: int,
        user_id: int,
        token: str,
        send: Callable[[dict], Awaitable[None]],
        transport: SignalingTransport,
        session_id: Optional[str] = None,
) -> SessionCoordinator:
    """按 settings 组装生产环境使用的协调器（浏览器桥接 + httpx 客户端 + Redis 存储）"""
    bridge = BrowserBridge(send, timeout=float(getattr(django_settings, "PROCTORING_RPC_TIMEOUT_SECONDS", 10)))
    return SessionCoordinator(
        contest_id=contest_id,
        user_id=user_id,
        bridge=bridge,
        transport=transport,
        api=ContestApiClient(token=token),
        store=SessionStore(contest_id, user_id),
        session_id=session_id,
    )
