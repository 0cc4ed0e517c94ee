# apps/common/utils/redis_keys.py
"""
Redis 键名集中管理，避免各模块随意拼接带来不一致
业务场景：WebSocket 连接配额、监考会话草稿与续连快照
"""

from __future__ import annotations


def ws_user_conn_key(user_id: int) -> str:
    """WebSocket 用户并发连接计数键"""
    return f"ws:user:{user_id}:connections"


def ws_ip_conn_key(ip: str) -> str:
    """WebSocket IP 并发连接计数键"""
    return f"ws:ip:{ip}:connections"


def task_code_key(user_id: int, contest_id: int) -> str:
    """各题代码草稿（task_<contestId>_code），按选手隔离"""
    return f"proctoring:user:{user_id}:task_{contest_id}_code"


def task_language_key(user_id: int, contest_id: int) -> str:
    """所选编程语言（task_<contestId>_language），按选手隔离"""
    return f"proctoring:user:{user_id}:task_{contest_id}_language"


def session_snapshot_key(user_id: int, contest_id: int) -> str:
    """续连快照：开始时间、已提交代码、已完成题目、终止状态"""
    return f"proctoring:user:{user_id}:session_{contest_id}"
