"""
Django settings for Config project.

- 所有可变配置均从环境变量读取，默认值面向本地开发
- 会话状态不落库；DATABASES 仅满足 Django 内置应用的加载要求
"""

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-proctoring-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.staticfiles",
    "channels",
    "rest_framework",
    "drf_spectacular",
    "apps.proctoring",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
    "apps.common.middleware.RequestContextMiddleware",
]

ROOT_URLCONF = "Config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {"context_processors": ["django.template.context_processors.request"]},
    },
]

ASGI_APPLICATION = "Config.asgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

LANGUAGE_CODE = "zh-hans"
TIME_ZONE = "Asia/Shanghai"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ======================
# Redis / Channels
# ======================

REDIS_HOST = os.getenv("REDIS_HOST", "127.0.0.1")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_DB_CACHE = int(os.getenv("REDIS_DB_CACHE", 0))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "")
REDIS_CONNECT_TIMEOUT = float(os.getenv("REDIS_CONNECT_TIMEOUT", 0.2))
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", 0.5))
CHANNELS_REDIS_URL = os.getenv("CHANNELS_REDIS_URL", "")

if CHANNELS_REDIS_URL:
    CHANNEL_LAYERS = {
        "default": {
            "BACKEND": "channels_redis.core.RedisChannelLayer",
            "CONFIG": {"hosts": [CHANNELS_REDIS_URL]},
        }
    }
else:
    # 单进程开发/测试使用内存层，多进程部署必须配置 Redis
    CHANNEL_LAYERS = {"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}}

WS_MAX_CONNECTIONS_PER_USER = int(os.getenv("WS_MAX_CONNECTIONS_PER_USER", 5))
WS_MAX_CONNECTIONS_PER_IP = int(os.getenv("WS_MAX_CONNECTIONS_PER_IP", 50))

# ======================
# DRF / JWT / OpenAPI
# ======================

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": ["apps.common.authentication.JWTAuthentication"],
    "DEFAULT_PERMISSION_CLASSES": ["apps.common.permissions.IsAuthenticated"],
    "EXCEPTION_HANDLER": "apps.common.exception_handler.custom_exception_handler",
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "UNAUTHENTICATED_USER": "django.contrib.auth.models.AnonymousUser",
}

# 令牌由比赛后端签发（payload: userId / username / role），与其共享密钥
SIMPLE_JWT = {
    "ALGORITHM": os.getenv("CONTEST_JWT_ALGORITHM", "HS256"),
    "SIGNING_KEY": os.getenv("CONTEST_JWT_SECRET", SECRET_KEY),
    "AUTH_HEADER_TYPES": ("Bearer",),
    "USER_ID_CLAIM": "userId",
    "USER_ID_FIELD": "id",
    "TOKEN_USER_CLASS": "apps.common.infra.jwt_provider.ContestTokenUser",
    "ACCESS_TOKEN_LIFETIME": timedelta(hours=int(os.getenv("CONTEST_JWT_LIFETIME_HOURS", 24))),
}
JWT_USE_COOKIE = _env_bool("JWT_USE_COOKIE", False)
JWT_ACCESS_COOKIE_NAME = os.getenv("JWT_ACCESS_COOKIE_NAME", "jwt_token_in_cookie")

SPECTACULAR_SETTINGS = {
    "TITLE": "Proctoring Coordinator API",
    "DESCRIPTION": "监考会话查询接口；实时交互见 ws/proctoring/contests/<id>/session|monitor/",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
}

# ======================
# 日志
# ======================

LOG_PATH = os.getenv("LOG_PATH", str(BASE_DIR / "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "plain")

# ======================
# 比赛后端 / 监考会话
# ======================

CONTEST_API_BASE_URL = os.getenv("CONTEST_API_BASE_URL", "http://127.0.0.1:5000")
CONTEST_API_TIMEOUT_SECONDS = float(os.getenv("CONTEST_API_TIMEOUT_SECONDS", 10))

PROCTORING_DEBOUNCE_SECONDS = float(os.getenv("PROCTORING_DEBOUNCE_SECONDS", 0.5))
PROCTORING_TICK_SECONDS = float(os.getenv("PROCTORING_TICK_SECONDS", 1.0))
PROCTORING_RPC_TIMEOUT_SECONDS = float(os.getenv("PROCTORING_RPC_TIMEOUT_SECONDS", 10))
# 媒体授权弹窗需要等待用户操作，超时更长
PROCTORING_MEDIA_PROMPT_TIMEOUT_SECONDS = float(os.getenv("PROCTORING_MEDIA_PROMPT_TIMEOUT_SECONDS", 120))
PROCTORING_STATE_TTL_SECONDS = int(os.getenv("PROCTORING_STATE_TTL_SECONDS", 7 * 24 * 3600))
