# apps/proctoring/task_state.py

from __future__ import annotations

import datetime
import math
from typing import Awaitable, Callable, Optional

from apps.common.exceptions import SessionExpiredError, SubmissionLimitError, ValidationError
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.time import now

from . import events
from .debounce import DEFAULT_DEBOUNCE_SECONDS, Debouncer
from .schemas import (
    ContestPlan,
    ContestSettings,
    Session,
    SessionStatus,
    ShiftDenied,
    ShiftDenyReason,
    TaskInfo,
    TestResults,
)
from .storage import SessionStore

logger = get_logger(__name__)

DEFAULT_LANGUAGE = "python"


class TaskState:
    """
    会话计时与题目状态

    单写者约定：
    - completed_task_ids / submitted_code_by_task / active_task_index 只在本类中修改
    - 其他组件经由会话协调器读取

    代码持久化：
    - 编辑器输入立即更新 draft，对外可见的 code 及存储写入经 Debouncer 合并后才提交
    - 切题时若 draft 与缓存不同才写入存储
    """

    def __init__(
            self,
            *,
            session: Session,
            plan: ContestPlan,
            settings: ContestSettings,
            store: SessionStore,
            emit_activity: Callable[[str, dict], None],
            on_timeout: Optional[Callable[[], Awaitable[None]]] = None,
            on_commit: Optional[Callable[[str, str], None]] = None,
            language: Optional[str] = None,
            debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
            clock: Callable[[], datetime.datetime] = now,
    ):
        self.session = session
        self.plan = plan
        self.settings = settings
        self.store = store
        self._emit_activity = emit_activity
        self._on_timeout = on_timeout
        self._on_commit = on_commit
        self._clock = clock
        self.language = language or store.load_language() or DEFAULT_LANGUAGE
        self.submission_counts: dict[str, int] = {}
        self._drafts: dict[str, str] = store.load_drafts()
        self._expired = False
        self._debouncer = Debouncer(self._commit, delay=debounce_seconds)

        if not session.task_order:
            session.task_order = [task.task_id for task in plan.tasks]
        if not 0 <= session.active_task_index < len(session.task_order):
            session.active_task_index = 0
        self.draft = self._initial_code(self.active_task)
        self.code = self.draft

    # ------------------------
    # 只读视图
    # ------------------------

    @property
    def active_task(self) -> TaskInfo:
        return self.plan.tasks[self.session.active_task_index]

    @property
    def remaining_seconds(self) -> int:
        """剩余秒数，下限为 0；未开始计时时返回完整时长"""
        if self.session.expires_at is None:
            return self.plan.duration_minutes * 60
        delta = (self.session.expires_at - self._clock()).total_seconds()
        return max(0, math.ceil(delta))

    @property
    def expired(self) -> bool:
        return self._expired

    def snapshot(self) -> dict:
        task = self.active_task
        return {
            "active_task_index": self.session.active_task_index,
            "active_task_id": task.task_id,
            "task_order": list(self.session.task_order),
            "language": self.language,
            "remaining_seconds": self.remaining_seconds,
            "completed_task_ids": sorted(self.session.completed_task_ids),
            "submitted_task_ids": sorted(self.session.submitted_code_by_task),
            "submission_counts": dict(self.submission_counts),
        }

    # ------------------------
    # 计时
    # ------------------------

    def start_clock(self, started_at: Optional[datetime.datetime] = None) -> None:
        """开始计时；续连时传入原始 started_at，截止时间不因重连而延后"""
        if self.session.started_at is None:
            self.session.started_at = started_at or self._clock()
        self.session.expires_at = self.session.started_at + datetime.timedelta(minutes=self.plan.duration_minutes)

    async def tick(self) -> bool:
        """
        每秒调用一次：剩余时间归零时触发超时策略并置为 Completed
        - 计时从首次进入 Active 开始，之后与会话状态无关（续连后等待媒体授权期间同样计时）
        - 只触发一次；之后重复调用无副作用
        - 返回本次调用是否触发了超时
        """
        if self._expired or self.session.status.is_terminal:
            return False
        if self.session.expires_at is None:
            return False
        if self.remaining_seconds > 0:
            return False
        self._expired = True
        self._debouncer.flush()
        logger.info("比赛时间耗尽，会话进入超时结束流程", extra=logger_extra({"session_id": self.session.session_id}))
        try:
            if self._on_timeout is not None:
                await self._on_timeout()
        finally:
            self.session.status = SessionStatus.COMPLETED
            self.session.end_reason = "timeout"
        return True

    def ensure_time_left(self) -> None:
        if self._expired or (self.session.expires_at is not None and self.remaining_seconds <= 0):
            raise SessionExpiredError()

    # ------------------------
    # 编辑器
    # ------------------------

    def edit(self, code: str) -> None:
        """编辑器原始输入：立即更新 draft，提交走防抖"""
        self.draft = code
        self._debouncer.push((self.active_task.task_id, code))

    def flush(self) -> None:
        self._debouncer.flush()

    def cancel_pending(self) -> None:
        self._debouncer.cancel()

    def _commit(self, value: tuple[str, str]) -> None:
        task_id, code = value
        if task_id == self.active_task.task_id:
            self.code = code
        self._persist_draft(task_id, code)
        if self._on_commit is not None:
            self._on_commit(task_id, code)

    def _persist_draft(self, task_id: str, code: str) -> None:
        if self._drafts.get(task_id) == code:
            return
        self._drafts[task_id] = code
        self.store.save_draft(task_id, code)

    def select_language(self, language: str) -> Optional[str]:
        """
        切换编程语言；当前题目仍是原语言的初始代码时换成新语言的初始代码
        返回需要加载到编辑器的代码，无需替换时返回 None
        """
        language = (language or "").strip()
        if not language:
            raise ValidationError(message="编程语言不能为空")
        self.flush()
        previous, self.language = self.language, language
        self.store.save_language(language)
        task = self.active_task
        if task.task_id in self.session.submitted_code_by_task:
            return None
        if self.draft in ("", task.boilerplate_for(previous)):
            self.draft = self.code = task.boilerplate_for(language)
            return self.draft
        return None

    # ------------------------
    # 切题
    # ------------------------

    def switch_task(self, target_index: int, *, override: bool = False) -> Optional[ShiftDenied]:
        """
        切换到 target_index 对应的题目

        判定顺序：
        1. 越界 -> ValidationError
        2. 与当前题目相同 -> 直接成功
        3. 开启 preventBackwardShiftAfterSubmission 且目标题已提交 -> BACKWARD_AFTER_SUBMIT（不可绕过）
        4. 关闭 allowTaskShift 且当前题未完成 -> MUST_COMPLETE_FIRST（override=True 可绕过）
        """
        if isinstance(target_index, bool) or not isinstance(target_index, int):
            raise ValidationError(message="题目下标必须为整数")
        if not 0 <= target_index < len(self.session.task_order):
            raise ValidationError(message="题目下标越界", extra={"target_index": target_index})
        current = self.session.active_task_index
        if target_index == current:
            return None

        target_id = self.session.task_order[target_index]
        if self.settings.prevent_backward_shift_after_submission and (
                target_id in self.session.submitted_code_by_task or target_id in self.session.completed_task_ids
        ):
            return ShiftDenied(reason=ShiftDenyReason.BACKWARD_AFTER_SUBMIT, target_index=target_index)

        current_id = self.session.task_order[current]
        if not self.settings.allow_task_shift and current_id not in self.session.completed_task_ids and not override:
            return ShiftDenied(reason=ShiftDenyReason.MUST_COMPLETE_FIRST, target_index=target_index)

        self.flush()
        self._persist_draft(current_id, self.draft)
        self.session.active_task_index = target_index
        self.draft = self.code = self._initial_code(self.active_task)
        logger.info(
            "切换题目",
            extra=logger_extra({"from_index": current, "to_index": target_index, "override": override}),
        )
        return None

    def load_source(self) -> str:
        """当前题目代码来源：submitted / draft / boilerplate"""
        task_id = self.active_task.task_id
        if task_id in self.session.submitted_code_by_task:
            return "submitted"
        if task_id in self._drafts:
            return "draft"
        return "boilerplate"

    def _initial_code(self, task: TaskInfo) -> str:
        submitted = self.session.submitted_code_by_task.get(task.task_id)
        if submitted is not None:
            return submitted
        draft = self._drafts.get(task.task_id)
        if draft is not None:
            return draft
        return task.boilerplate_for(self.language)

    # ------------------------
    # 提交
    # ------------------------

    def check_submission_allowed(self, task_id: str) -> None:
        """maxSubmissionsAllowed > 0 时限制单题提交次数，0 表示不限"""
        limit = self.settings.max_submissions_allowed
        if limit > 0 and self.submission_counts.get(task_id, 0) >= limit:
            raise SubmissionLimitError(extra={"task_id": task_id, "limit": limit})

    def record_submission(self, task_id: str, code: str, results: TestResults) -> bool:
        """
        记录一次提交：更新已提交代码；全部用例（含隐藏用例）通过才计入已完成
        返回是否全部通过
        """
        if task_id not in self.session.task_order:
            raise ValidationError(message="题目不属于当前比赛", extra={"task_id": task_id})
        self.session.submitted_code_by_task[task_id] = code
        self.submission_counts[task_id] = self.submission_counts.get(task_id, 0) + 1
        passed = results.all_passed
        if passed:
            self.session.completed_task_ids.add(task_id)
        self._emit_activity(
            events.TASK_SUBMITTED,
            {
                "taskId": task_id,
                "passed": results.passed,
                "total": results.total,
                "allPassed": passed,
            },
        )
        return passed
