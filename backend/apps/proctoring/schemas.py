# apps/proctoring/schemas.py

from __future__ import annotations

import dataclasses
import datetime
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Optional

from apps.common.base.base_schema import BaseSchema
from apps.common.exceptions import ValidationError
from apps.common.utils.time import isoformat, now

from . import events


# Schema 层：会话聚合、媒体授权、对等连接、锁定状态与外部 payload 的结构化表示，不写业务流程


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_MEDIA = "awaiting_media"
    ACTIVE = "active"
    LOCKED = "locked"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ABORTED)


class MediaKind(str, Enum):
    CAMERA = "camera"
    MICROPHONE = "microphone"
    SCREEN = "screen"


class PermissionState(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class PeerState(str, Enum):
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class ShiftDenyReason(str, Enum):
    BACKWARD_AFTER_SUBMIT = "backward_after_submit"
    MUST_COMPLETE_FIRST = "must_complete_first"


@dataclass(frozen=True)
class ShiftDenied:
    """
    切题被拒绝（正常控制流结果，不是异常）
    - BACKWARD_AFTER_SUBMIT：硬性规则，任何确认都无法绕过
    - MUST_COMPLETE_FIRST：软性规则，选手确认后可携带 override 重试
    """

    reason: ShiftDenyReason
    target_index: int

    @property
    def overridable(self) -> bool:
        return self.reason is ShiftDenyReason.MUST_COMPLETE_FIRST


# ======================
# 媒体
# ======================

@dataclass(frozen=True)
class MediaTrackHandle:
    track_id: str
    kind: str  # "audio" / "video"


@dataclass(frozen=True)
class MediaStreamHandle:
    """浏览器端 MediaStream 的引用句柄，轨道本体始终留在浏览器"""

    stream_id: str
    tracks: tuple[MediaTrackHandle, ...] = ()

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "MediaStreamHandle":
        stream_id = data.get("stream_id") or data.get("id")
        if not stream_id:
            raise ValidationError(message="媒体流缺少 stream_id")
        tracks = tuple(
            MediaTrackHandle(track_id=str(t.get("track_id") or t.get("id")), kind=str(t.get("kind", "")))
            for t in data.get("tracks") or []
            if t.get("track_id") or t.get("id")
        )
        return cls(stream_id=str(stream_id), tracks=tracks)


@dataclass
class MediaPermissionState:
    kind: MediaKind
    state: PermissionState = PermissionState.PENDING
    # 仅在 GRANTED 时持有；由媒体采集闸门独占，只借给对等连接管理器
    stream: Optional[MediaStreamHandle] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "stream_id": self.stream.stream_id if self.stream else None,
            "reason": self.reason,
        }


# ======================
# 对等连接 / 锁定
# ======================

@dataclass
class PeerLink:
    remote_id: str
    connection: Any
    state: PeerState = PeerState.NEGOTIATING
    created_at: datetime.datetime = field(default_factory=now)


@dataclass
class LockdownState:
    fullscreen_active: bool = False
    violation_count: int = 0
    locked: bool = False

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


# ======================
# 行为事件
# ======================

@dataclass(frozen=True)
class ActivityEvent:
    """只追加的行为日志条目，创建后不可修改"""

    type: str
    timestamp: datetime.datetime = field(default_factory=now)
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def severity(self) -> str:
        return events.severity_for(self.type)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "timestamp": isoformat(self.timestamp),
            "severity": self.severity,
            "payload": dict(self.payload),
        }

    def to_request_body(self) -> dict:
        """POST /api/contests/:id/activity 的请求体：{type, ...payload} 并兼容后端的 activityType 字段"""
        body = dict(self.payload)
        body.update(
            {
                "type": self.type,
                "activityType": self.type,
                "activityData": dict(self.payload),
                "severity": self.severity,
                "timestamp": isoformat(self.timestamp),
            }
        )
        return body


# ======================
# 外部 payload
# ======================

@dataclass
class ContestSettings(BaseSchema[None]):
    """
    比赛设置（GET /api/contests/:id/settings 的 settings 字段）
    - 字段与比赛后端保持一致，未知字段忽略
    """

    ALIASES: ClassVar[dict[str, str]] = {
        "testModeEnabled": "test_mode_enabled",
        "aiHintsEnabled": "ai_hints_enabled",
        "aiModeEnabled": "ai_mode_enabled",
        "fullScreenModeEnabled": "full_screen_mode_enabled",
        "allowCopyPaste": "allow_copy_paste",
        "enableActivityLogs": "enable_activity_logs",
        "requireCamera": "require_camera",
        "requireMicrophone": "require_microphone",
        "requireScreenShare": "require_screen_share",
        "perTaskTimeLimit": "per_task_time_limit",
        "enablePerTaskTimer": "enable_per_task_timer",
        "autoStart": "auto_start",
        "autoEnd": "auto_end",
        "maxHintsAllowed": "max_hints_allowed",
        "hintUnlockAfterSubmissions": "hint_unlock_after_submissions",
        "hintUnlockAfterSeconds": "hint_unlock_after_seconds",
        "provideLastSubmissionContext": "provide_last_submission_context",
        "maxSubmissionsAllowed": "max_submissions_allowed",
        "autoSubmitOnTimeout": "auto_submit_on_timeout",
        "allowTaskShift": "allow_task_shift",
        "preventBackwardShiftAfterSubmission": "prevent_backward_shift_after_submission",
        "additionalSettings": "additional_settings",
    }

    test_mode_enabled: bool = False
    ai_hints_enabled: bool = True
    ai_mode_enabled: bool = True
    full_screen_mode_enabled: bool = False
    allow_copy_paste: bool = True
    enable_activity_logs: bool = True
    require_camera: bool = False
    require_microphone: bool = False
    require_screen_share: bool = False
    per_task_time_limit: Optional[int] = None
    enable_per_task_timer: bool = False
    auto_start: bool = False
    auto_end: bool = True
    max_hints_allowed: int = 3
    hint_unlock_after_submissions: int = 0
    hint_unlock_after_seconds: int = 0
    provide_last_submission_context: bool = True
    max_submissions_allowed: int = 0
    auto_submit_on_timeout: bool = True
    allow_task_shift: bool = True
    prevent_backward_shift_after_submission: bool = False
    additional_settings: Optional[dict] = None

    def validate(self) -> None:
        """
        布尔字段只接受 true / false / null（null 按默认值处理），字符串等其他类型视为格式错误；
        计数字段必须为非负整数
        """
        for f in dataclasses.fields(self):
            if not isinstance(f.default, bool):
                continue
            value = getattr(self, f.name)
            if value is None:
                setattr(self, f.name, f.default)
            elif not isinstance(value, bool):
                raise ValidationError(message=f"比赛设置字段 {f.name} 不是布尔值", extra={"value": value})
        for name in ("max_hints_allowed", "hint_unlock_after_submissions", "hint_unlock_after_seconds",
                     "max_submissions_allowed"):
            value = getattr(self, name)
            try:
                value = int(value or 0)
            except (TypeError, ValueError) as exc:
                raise ValidationError(message=f"比赛设置字段 {name} 不是整数") from exc
            if value < 0:
                raise ValidationError(message=f"比赛设置字段 {name} 不能为负数")
            setattr(self, name, value)

    def required_media(self) -> frozenset[MediaKind]:
        """根据设置计算进入答题前必须授权的媒体能力"""
        required = set()
        if self.require_camera:
            required.add(MediaKind.CAMERA)
        if self.require_microphone:
            required.add(MediaKind.MICROPHONE)
        if self.require_screen_share:
            required.add(MediaKind.SCREEN)
        return frozenset(required)


# 设置拉取失败时的宽松兜底：可用性优先于严格性
FALLBACK_SETTINGS = ContestSettings(
    full_screen_mode_enabled=False,
    allow_copy_paste=True,
    require_camera=False,
    require_microphone=False,
    require_screen_share=False,
    allow_task_shift=True,
    prevent_backward_shift_after_submission=False,
    auto_submit_on_timeout=True,
    max_submissions_allowed=0,
)


def fallback_settings() -> ContestSettings:
    """返回兜底设置的副本，避免调用方误改模块级常量"""
    return dataclasses.replace(FALLBACK_SETTINGS)


@dataclass
class TaskInfo(BaseSchema[None]):
    """比赛中的一道题；boilerplate 为 {language: code} 或单一字符串"""

    ALIASES: ClassVar[dict[str, str]] = {
        "id": "task_id",
        "orderIndex": "order_index",
        "boilerplateCode": "boilerplate",
    }

    task_id: str = ""
    title: str = ""
    order_index: int = 0
    boilerplate: Any = None

    def validate(self) -> None:
        if self.task_id in (None, ""):
            raise ValidationError(message="题目缺少 id")
        self.task_id = str(self.task_id)
        try:
            self.order_index = int(self.order_index or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(message="题目 orderIndex 不是整数") from exc

    def boilerplate_for(self, language: str) -> str:
        """管理员为该语言配置的初始代码，缺省为空字符串"""
        if isinstance(self.boilerplate, Mapping):
            return str(self.boilerplate.get(language) or "")
        return str(self.boilerplate or "")


@dataclass
class ContestPlan:
    """GET /api/contests/:id/tasks 的结构化结果：时长（分钟）与按顺序排列的题目"""

    contest_id: int
    title: str
    duration_minutes: int
    tasks: list[TaskInfo]

    @classmethod
    def from_payload(cls, contest_id: int, data: Mapping[str, Any]) -> "ContestPlan":
        contest = data.get("contest") or {}
        raw_tasks = data.get("tasks") or []
        if not isinstance(raw_tasks, list) or not raw_tasks:
            raise ValidationError(message="比赛未配置任何题目")
        tasks = [TaskInfo.from_dict(item, auto_validate=True) for item in raw_tasks]
        tasks.sort(key=lambda t: t.order_index)
        try:
            duration = int(contest.get("duration") or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(message="比赛时长不是整数") from exc
        if duration <= 0:
            raise ValidationError(message="比赛时长必须为正数")
        return cls(contest_id=contest_id, title=str(contest.get("title") or ""), duration_minutes=duration, tasks=tasks)


@dataclass
class TestCaseResult(BaseSchema[None]):
    __test__ = False  # 避免被 pytest 当作测试类收集

    ALIASES: ClassVar[dict[str, str]] = {
        "testCase": "test_case",
        "actualOutput": "actual_output",
        "expectedOutput": "expected_output",
        "executionTime": "execution_time",
    }

    passed: bool = False
    test_case: Optional[int] = None
    input: Any = None
    actual_output: Any = None
    expected_output: Any = None
    execution_time: Any = None
    error: Any = None
    memory: Any = None

    def validate(self) -> None:
        self.passed = bool(self.passed)


@dataclass
class TestResults(BaseSchema[None]):
    """评测结果（POST /api/submissions/run|submit 的 data 字段）"""

    __test__ = False

    ALIASES: ClassVar[dict[str, str]] = {"submissionId": "submission_id"}

    passed: int = 0
    total: int = 0
    results: list[TestCaseResult] = field(default_factory=list)
    status: str = ""
    submission_id: Optional[int] = None
    score: Optional[int] = None

    def validate(self) -> None:
        try:
            self.passed = int(self.passed or 0)
            self.total = int(self.total or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(message="评测结果计数不是整数") from exc
        self.results = [
            item if isinstance(item, TestCaseResult) else TestCaseResult.from_dict(item, auto_validate=True)
            for item in self.results or []
        ]

    @property
    def all_passed(self) -> bool:
        """包含隐藏用例在内全部通过"""
        return self.total > 0 and self.passed == self.total


# ======================
# 会话聚合
# ======================

@dataclass
class Session:
    """
    一名选手对一场比赛的一次作答

    不变式：
    - active_task_index 始终是 task_order 的合法下标
    - completed_task_ids / submitted_code_by_task 只由题目状态组件写入
    """

    session_id: str
    contest_id: int
    user_id: int
    status: SessionStatus = SessionStatus.INITIALIZING
    started_at: Optional[datetime.datetime] = None
    expires_at: Optional[datetime.datetime] = None
    active_task_index: int = 0
    task_order: list[str] = field(default_factory=list)
    completed_task_ids: set[str] = field(default_factory=set)
    submitted_code_by_task: dict[str, str] = field(default_factory=dict)
    activity_log: list[ActivityEvent] = field(default_factory=list)
    end_reason: str = ""

    @property
    def active_task_id(self) -> Optional[str]:
        if not self.task_order:
            return None
        return self.task_order[self.active_task_index]
