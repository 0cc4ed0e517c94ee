"""
日志封装：提供统一的日志记录器

- 日志目录取自 settings.LOG_PATH，输出到 {LOG_PATH}/system.log
- 支持 JSON 和 PLAIN 两种格式
- 自动轮转日志文件（按日期）
- 自动注入请求/会话上下文（request_id、user_id、contest_id、session_id、ip 等）
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from django.conf import settings as django_settings

from apps.common.utils.request_context import get_request_context

_configured = False


class ProctorJSONFormatter(logging.Formatter):
    """
    JSON 格式化器

    输出示例：
    {"timestamp": "2026-10-18 09:12:03", "level": "WARNING", "logger": "apps.proctoring.lockdown",
     "message": "检测到退出全屏，会话已锁定", "user_id": 7, "contest_id": 3, "session_id": "a1b2c3d4e5f6"}
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_request_context()

        log_dict = {
            "timestamp": datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # 仅在有值时追加上下文字段
        if ctx.get("username"):
            log_dict["username"] = ctx["username"]
        if ctx.get("user_id") is not None:
            log_dict["user_id"] = ctx["user_id"]
        if ctx.get("contest_id") is not None:
            log_dict["contest_id"] = ctx["contest_id"]
        if ctx.get("session_id"):
            log_dict["session_id"] = ctx["session_id"]
        if ctx.get("ip"):
            log_dict["ip_address"] = ctx["ip"]
        if ctx.get("path"):
            log_dict["request_path"] = ctx["path"]
        if ctx.get("request_id"):
            log_dict["request_id"] = ctx["request_id"]

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, ensure_ascii=False, default=str)


class ProctorPlainFormatter(logging.Formatter):
    """
    PLAIN 格式化器

    格式：{timestamp} {level} {logger} {message} [{user_id}|{contest_id}|{session_id}|{ip_address}|{request_path}]

    输出示例：
    2026-10-18 09:12:03 WARNING apps.proctoring.lockdown 检测到退出全屏，会话已锁定 [7|3|a1b2c3d4e5f6|127.0.0.1|/ws/...]
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_request_context()

        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        def _or_dash(value) -> str:
            return "-" if value in (None, "") else str(value)

        context_info = "[{}|{}|{}|{}|{}]".format(
            _or_dash(ctx.get("user_id")),
            _or_dash(ctx.get("contest_id")),
            _or_dash(ctx.get("session_id")),
            _or_dash(ctx.get("ip")),
            _or_dash(ctx.get("path")),
        )

        log_line = f"{timestamp} {record.levelname} {record.name} {record.getMessage()} {context_info}"

        if record.exc_info:
            log_line += "\n" + self.formatException(record.exc_info)

        return log_line


def get_log_path_from_settings() -> str:
    """基于 settings.LOG_PATH 生成日志文件路径，默认 logs/system.log"""
    log_dir = getattr(django_settings, "LOG_PATH", "logs")
    log_dir_path = Path(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)
    return str(log_dir_path / "system.log")


class SafeTimedRotatingFileHandler(logging.handlers.TimedRotatingFileHandler):
    """
    按日期轮转的文件 Handler：Windows 上轮转失败时跳过，避免 PermissionError 中断日志
    """

    def doRollover(self):
        try:
            super().doRollover()
        except PermissionError:
            # 文件被占用时跳过一次轮转，下次写入再尝试
            pass


def configure_logging(force: bool = False, *, level: Optional[int] = None, log_file_path: Optional[str] = None) -> None:
    """
    配置日志系统

    配置内容：
    - 默认 PLAIN 格式（LOG_FORMAT=json 时输出 JSON）
    - 按日期自动轮转（每天午夜），保留 30 天
    - 自动注入请求 / 会话上下文

    参数：
        force: 是否强制重新配置（默认只配置一次）
    """
    global _configured
    if _configured and not force:
        return

    log_level = level if level is not None else getattr(logging, str(getattr(django_settings, "LOG_LEVEL", "INFO")).upper(), logging.INFO)
    log_file_path = log_file_path if log_file_path is not None else get_log_path_from_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 清除已有的 handlers（避免重复配置，同时关闭旧文件避免资源告警）
    for handler in list(root_logger.handlers):
        try:
            handler.close()
        except Exception:
            pass
    root_logger.handlers.clear()

    file_handler = SafeTimedRotatingFileHandler(
        filename=log_file_path,
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
        delay=True,  # 延迟打开文件，避免多进程抢占导致轮转失败
    )
    file_handler.suffix = "%Y-%m-%d"  # 轮转文件后缀：system.log.2026-10-18
    file_handler.setLevel(log_level)

    if str(getattr(django_settings, "LOG_FORMAT", "plain")).lower() == "json":
        formatter: logging.Formatter = ProctorJSONFormatter()
    else:
        formatter = ProctorPlainFormatter()
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # 开发环境额外输出到控制台
    if os.getenv("DEBUG", "False").lower() == "true":
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取 logger 实例

    使用方式：
        logger = get_logger(__name__)
        logger.info("监考会话已激活")
        logger.warning("屏幕共享已被用户终止")
        logger.error("评测服务调用失败", exc_info=True)
    """
    if not _configured:
        configure_logging()

    return logging.getLogger(name)


# 参赛者源码、令牌等不允许落入日志
SENSITIVE_KEYS = {"password", "token", "access", "refresh", "code", "source", "authorization"}


def sanitize_extra(extra: Optional[dict] = None) -> dict:
    """
    过滤敏感字段，避免在日志中泄露密码/令牌/选手代码
    """
    if not extra:
        return {}
    sanitized = {}
    for k, v in extra.items():
        if k.lower() in SENSITIVE_KEYS:
            sanitized[k] = "***"
        else:
            sanitized[k] = v
    return sanitized


def logger_extra(extra: Optional[dict] = None) -> dict:
    """封装 extra，自动过滤敏感字段"""
    return sanitize_extra(extra)
