# apps/proctoring/storage.py

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Optional

from django.conf import settings

from apps.common.infra import redis_client
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.redis_keys import session_snapshot_key, task_code_key, task_language_key
from apps.common.utils.time import from_timestamp, to_timestamp

logger = get_logger(__name__)


@dataclass
class SessionSnapshot:
    """
    续连快照：同一场比赛的重复连接据此恢复计时与作答进度
    - started_at 只在首次开始时写入，续连不重置
    - status 为空表示未结束；否则为终止状态（completed/aborted）
    - locked 为 True 时续连后仍处于锁定状态，只能通过重新进入全屏解锁
    """

    started_at: datetime.datetime
    active_task_index: int = 0
    submitted_code_by_task: dict[str, str] = field(default_factory=dict)
    completed_task_ids: set[str] = field(default_factory=set)
    submission_counts: dict[str, int] = field(default_factory=dict)
    violation_count: int = 0
    locked: bool = False
    status: str = ""
    end_reason: str = ""

    def to_dict(self) -> dict:
        return {
            "started_at": to_timestamp(self.started_at),
            "active_task_index": self.active_task_index,
            "submitted_code_by_task": dict(self.submitted_code_by_task),
            "completed_task_ids": sorted(self.completed_task_ids),
            "submission_counts": dict(self.submission_counts),
            "violation_count": self.violation_count,
            "locked": self.locked,
            "status": self.status,
            "end_reason": self.end_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionSnapshot":
        return cls(
            started_at=from_timestamp(data["started_at"]),
            active_task_index=int(data.get("active_task_index") or 0),
            submitted_code_by_task={str(k): str(v) for k, v in (data.get("submitted_code_by_task") or {}).items()},
            completed_task_ids={str(t) for t in data.get("completed_task_ids") or []},
            submission_counts={str(k): int(v) for k, v in (data.get("submission_counts") or {}).items()},
            violation_count=int(data.get("violation_count") or 0),
            locked=data.get("locked") is True,
            status=str(data.get("status") or ""),
            end_reason=str(data.get("end_reason") or ""),
        )


class SessionStore:
    """
    选手端本地持久化（草稿、语言、续连快照），仅用于恢复，不作为提交记录的权威来源

    backend 需提供 get_json / set_json / hset_json / hgetall_json / delete，默认使用 Redis；
    Redis 不可用时读写均静默降级（由 redis_client 记录警告）
    """

    def __init__(self, contest_id: int, user_id: int, *, backend: Any = None, ttl: Optional[int] = None):
        self.contest_id = contest_id
        self.user_id = user_id
        self.backend = backend if backend is not None else redis_client
        self.ttl = ttl if ttl is not None else int(getattr(settings, "PROCTORING_STATE_TTL_SECONDS", 7 * 24 * 3600))

    # ------------------------
    # 草稿：task_<contestId>_code，按题目分字段的哈希
    # ------------------------

    def load_drafts(self) -> dict[str, str]:
        data = self.backend.hgetall_json(task_code_key(self.user_id, self.contest_id))
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def save_draft(self, task_id: str, code: str) -> None:
        self.backend.hset_json(task_code_key(self.user_id, self.contest_id), task_id, code, ex=self.ttl)
        logger.debug(
            "草稿已保存",
            extra=logger_extra({"task_id": task_id, "length": len(code)}),
        )

    # ------------------------
    # 语言：task_<contestId>_language
    # ------------------------

    def load_language(self) -> Optional[str]:
        data = self.backend.get_json(task_language_key(self.user_id, self.contest_id))
        return str(data) if data else None

    def save_language(self, language: str) -> None:
        self.backend.set_json(task_language_key(self.user_id, self.contest_id), language, ex=self.ttl)

    # ------------------------
    # 续连快照
    # ------------------------

    def load_snapshot(self) -> Optional[SessionSnapshot]:
        data = self.backend.get_json(session_snapshot_key(self.user_id, self.contest_id))
        if not isinstance(data, dict) or "started_at" not in data:
            return None
        try:
            return SessionSnapshot.from_dict(data)
        except (TypeError, ValueError, KeyError):
            logger.warning("续连快照格式错误，已忽略", extra=logger_extra({"contest_id": self.contest_id}))
            return None

    def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        self.backend.set_json(session_snapshot_key(self.user_id, self.contest_id), snapshot.to_dict(), ex=self.ttl)

    def clear(self) -> None:
        self.backend.delete(
            task_code_key(self.user_id, self.contest_id),
            task_language_key(self.user_id, self.contest_id),
            session_snapshot_key(self.user_id, self.contest_id),
        )
