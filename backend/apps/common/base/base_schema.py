# apps/common/base/base_schema.py

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, Generic, Iterable, Mapping, Optional, TypeVar

T = TypeVar("T")
SchemaType = TypeVar("SchemaType", bound="BaseSchema[Any]")


@dataclass
class BaseSchema(ABC, Generic[T]):
    """
    业务 Schema / DTO 基类

    目的：
        - 用于在外部 payload（REST 响应、WebSocket 帧）与内部逻辑之间传递结构化数据；
        - 聚合字段校验逻辑；
        - 提供通用的字典化与别名映射能力（外部 camelCase → 内部 snake_case）

    子类示例：
        @dataclass
        class ContestSettings(BaseSchema):
            ALIASES = {"fullScreenModeEnabled": "full_screen_mode_enabled"}
            full_screen_mode_enabled: bool = False

            def validate(self):
                ...
    """

    #: 是否在 __post_init__ 中自动执行 validate
    auto_validate: ClassVar[bool] = False
    #: 字段别名映射：外部字段名 → 内部字段名
    ALIASES: ClassVar[dict[str, str]] = {}
    #: 是否忽略未声明的字段（外部服务常携带额外字段）
    ignore_unknown: ClassVar[bool] = True

    def __post_init__(self):
        if self.auto_validate:
            self.validate()

    # ------------------------
    # 校验钩子
    # ------------------------

    @abstractmethod
    def validate(self) -> None:
        """
        子类实现字段/业务约束校验，出错时抛 BizError
        """

    # ------------------------
    # 数据转换
    # ------------------------

    def to_dict(
            self,
            *,
            exclude_none: bool = False,
            exclude: Iterable[str] | None = None,
    ) -> Dict[str, Any]:
        """
        将 Schema 转为 dict，支持过滤 None 或移除指定字段
        """
        data = asdict(self)
        if exclude_none:
            data = {key: value for key, value in data.items() if value is not None}
        if exclude:
            for key in exclude:
                data.pop(key, None)
        return data

    def to_payload(self, *, exclude_none: bool = False) -> Dict[str, Any]:
        """
        按 ALIASES 反向映射回外部字段名，便于原样推送给前端
        """
        reverse = {target: alias for alias, target in self.ALIASES.items()}
        return {reverse.get(key, key): value for key, value in self.to_dict(exclude_none=exclude_none).items()}

    # ------------------------
    # 构建方法
    # ------------------------

    @classmethod
    def from_dict(
            cls: type[SchemaType],
            data: Mapping[str, Any],
            *,
            auto_validate: Optional[bool] = None,
    ) -> SchemaType:
        """
        将外部 payload 转为 Schema；auto_validate 控制是否立即校验
        """
        if not isinstance(data, dict):
            data = dict(data)
        # 兼容别名：将外部使用的别名映射到内部字段名
        if cls.ALIASES:
            normalized = dict(data)
            for alias, target in cls.ALIASES.items():
                if alias in normalized and target not in normalized:
                    normalized[target] = normalized.pop(alias)
                elif alias in normalized:
                    # 已存在目标字段时，移除别名避免 __init__ 收到未知参数
                    normalized.pop(alias)
            data = normalized
        if cls.ignore_unknown:
            known = {f.name for f in fields(cls)}
            data = {key: value for key, value in data.items() if key in known}
        instance = cls(**data)  # type: ignore[arg-type]
        if auto_validate or (auto_validate is None and cls.auto_validate):
            instance.validate()
        return instance
