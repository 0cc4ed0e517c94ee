# apps/proctoring/registry.py

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .coordinator import SessionCoordinator

# 进程内的活跃会话：(contest_id, user_id) -> 协调器
_live: dict[tuple[int, int], "SessionCoordinator"] = {}


def register(coordinator: "SessionCoordinator") -> Optional["SessionCoordinator"]:
    """登记新的协调器，返回被替换的旧协调器（同一选手重复连接）"""
    key = (coordinator.contest_id, coordinator.user_id)
    previous = _live.get(key)
    _live[key] = coordinator
    return previous if previous is not coordinator else None


def unregister(coordinator: "SessionCoordinator") -> None:
    """只移除自身，避免旧连接销毁时误删新连接的登记"""
    key = (coordinator.contest_id, coordinator.user_id)
    if _live.get(key) is coordinator:
        del _live[key]


def get(contest_id: int, user_id: int) -> Optional["SessionCoordinator"]:
    return _live.get((contest_id, user_id))


def clear() -> None:
    _live.clear()


def count() -> int:
    return len(_live)


def in_contest(contest_id: int) -> list["SessionCoordinator"]:
    return [coordinator for (cid, _), coordinator in _live.items() if cid == contest_id]
