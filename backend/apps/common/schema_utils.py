# apps/common/schema_utils.py
from __future__ import annotations

from rest_framework import serializers
from drf_spectacular.utils import inline_serializer


_CACHE: dict[str, type[serializers.Serializer]] = {}


def _cached(name: str, builder):
    """简单缓存，避免重复生成同名 inline serializer 导致冲突"""
    if name not in _CACHE:
        _CACHE[name] = builder()
    return _CACHE[name]


def api_response_schema(
    name: str,
    data_fields: dict,
    *,
    extra_serializer: serializers.Field | None = None,
) -> serializers.Serializer:
    """
    构造统一响应 Schema：code/message/data/extra
    - name 用于生成唯一的响应/数据命名
    - data_fields 为 data 内部的字段定义
    """
    def build():
        normalized_fields = {}
        for key, value in data_fields.items():
            if isinstance(value, type) and issubclass(value, serializers.Serializer):
                normalized_fields[key] = value()
            else:
                normalized_fields[key] = value
        data_serializer = inline_serializer(name=f"{name}Data", fields=normalized_fields)
        return inline_serializer(
            name=f"{name}Response",
            fields={
                "code": serializers.IntegerField(help_text="业务状态码，0 表示成功"),
                "message": serializers.CharField(help_text="提示信息"),
                "data": data_serializer,
                "extra": extra_serializer
                if extra_serializer
                else serializers.DictField(required=False, allow_null=True, help_text="附加信息"),
            },
        )

    return _cached(name, build)
