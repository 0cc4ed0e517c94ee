# apps/proctoring/signaling.py

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from apps.common.exceptions import SignalingError
from apps.common.infra.logger import get_logger, logger_extra

from . import events
from .schemas import ActivityEvent

logger = get_logger(__name__)


# ======================
# 入站消息（类型化后按类型分发给订阅者）
# ======================

@dataclass(frozen=True)
class OfferMessage:
    sender: str
    payload: dict


@dataclass(frozen=True)
class IceCandidateMessage:
    sender: str
    candidate: dict


@dataclass(frozen=True)
class MonitorJoinedMessage:
    monitor_id: str


@dataclass(frozen=True)
class MonitorLeftMessage:
    monitor_id: str


InboundMessage = Union[OfferMessage, IceCandidateMessage, MonitorJoinedMessage, MonitorLeftMessage]


def _require_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise SignalingError(message=f"信令缺少字段 {key}")
    return value


def _require_dict(data: dict, key: str) -> dict:
    value = data.get(key)
    if not isinstance(value, dict):
        raise SignalingError(message=f"信令字段 {key} 格式错误")
    return value


def parse_inbound(event: str, data: Any) -> InboundMessage:
    """将原始信令帧解析为类型化消息；格式错误抛 SignalingError"""
    if not isinstance(data, dict):
        raise SignalingError(message="信令内容必须为对象")
    if event == events.OFFER:
        payload = _require_dict(data, "payload")
        if payload.get("type") not in (None, "offer") or not isinstance(payload.get("sdp"), str):
            raise SignalingError(message="offer 描述格式错误")
        return OfferMessage(sender=_require_str(data, "sender"), payload=payload)
    if event == events.ICE_CANDIDATE:
        return IceCandidateMessage(sender=_require_str(data, "sender"), candidate=_require_dict(data, "candidate"))
    if event == events.MONITOR_JOINED:
        return MonitorJoinedMessage(monitor_id=_require_str(data, "monitorId"))
    if event == events.MONITOR_LEFT:
        return MonitorLeftMessage(monitor_id=_require_str(data, "monitorId"))
    raise SignalingError(message=f"未知信令事件 {event}")


# ======================
# 传输层
# ======================

class SignalingTransport(Protocol):
    async def send(self, event: str, data: dict, *, target: Optional[str] = None) -> None: ...


# 出站信令 -> channel layer 消息类型
_LAYER_TYPES = {
    events.JOIN_CONTEST: events.LAYER_PARTICIPANT_JOINED,
    events.LEAVE_CONTEST: events.LAYER_PARTICIPANT_LEFT,
    events.ANSWER: events.LAYER_ANSWER,
    events.ICE_CANDIDATE: events.LAYER_ICE_CANDIDATE,
    events.ACTIVITY: events.LAYER_ACTIVITY,
    events.MEDIA_UPDATED: events.LAYER_MEDIA_UPDATED,
}


class ChannelLayerTransport:
    """
    基于 Channels channel layer 的信令传输
    - 指定 target（监考端 channel_name）时点对点发送
    - 否则广播到比赛的监考分组
    - 发送方统一附带 sender（本连接的 channel_name），作为监考端回复时的 target
    """

    def __init__(self, channel_layer, *, contest_id: int, channel_name: str):
        self.channel_layer = channel_layer
        self.contest_id = contest_id
        self.channel_name = channel_name

    async def send(self, event: str, data: dict, *, target: Optional[str] = None) -> None:
        if self.channel_layer is None:
            raise SignalingError(message="channel layer 未配置")
        layer_type = _LAYER_TYPES.get(event)
        if layer_type is None:
            raise SignalingError(message=f"不支持的出站信令 {event}")
        message = {**data, "type": layer_type, "sender": self.channel_name}
        if target:
            await self.channel_layer.send(target, message)
        else:
            await self.channel_layer.group_send(events.monitor_group(self.contest_id), message)


# ======================
# 信令通道
# ======================

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class SignalingChannel:
    """
    会话级信令通道

    入站：receive(event, data) 解析为类型化消息后交给订阅该类型的处理器；
         格式错误的帧记录告警后丢弃
    出站：发送失败只记录日志并丢弃（由监考端负责重试），不向选手抛出
    行为事件：publish_activity 同时上报比赛后端与广播给监考端，均为 fire-and-forget
    """

    def __init__(
            self,
            transport: SignalingTransport,
            *,
            contest_id: int,
            user_id: int,
            activity_sink: Optional[Callable[[ActivityEvent], Awaitable[None]]] = None,
    ):
        self.transport = transport
        self.contest_id = contest_id
        self.user_id = user_id
        self.activity_sink = activity_sink
        self._handlers: dict[type, Handler] = {}
        self._background: set[asyncio.Task] = set()
        self._closed = False

    def subscribe(self, message_type: type, handler: Handler) -> None:
        self._handlers[message_type] = handler

    async def receive(self, event: str, data: Any) -> bool:
        """返回消息是否被处理"""
        try:
            message = parse_inbound(event, data)
        except SignalingError as exc:
            logger.warning("信令帧格式错误，已丢弃", extra=logger_extra({"event": event, "reason": exc.message}))
            return False
        handler = self._handlers.get(type(message))
        if handler is None:
            return False
        result = handler(message)
        if inspect.isawaitable(result):
            await result
        return True

    # ------------------------
    # 出站
    # ------------------------

    async def _send(self, event: str, data: dict, *, target: Optional[str] = None) -> bool:
        try:
            await self.transport.send(event, data, target=target)
        except Exception as exc:
            logger.warning(
                "信令发送失败，已丢弃",
                extra=logger_extra({"event": event, "target": target, "error": str(exc)}),
            )
            return False
        return True

    async def join_contest(self, *, target: Optional[str] = None) -> bool:
        """宣告上线；target 指定时只通知新加入的监考端"""
        return await self._send(
            events.JOIN_CONTEST, {"contestId": self.contest_id, "userId": self.user_id}, target=target
        )

    async def leave_contest(self) -> bool:
        return await self._send(events.LEAVE_CONTEST, {"contestId": self.contest_id, "userId": self.user_id})

    async def send_answer(self, target: str, payload: dict) -> bool:
        return await self._send(events.ANSWER, {"target": target, "payload": payload}, target=target)

    async def send_ice_candidate(self, target: str, candidate: dict) -> bool:
        return await self._send(events.ICE_CANDIDATE, {"target": target, "candidate": candidate}, target=target)

    async def announce_media_updated(self) -> bool:
        """本地媒体变化后通知监考端重新发起 offer"""
        return await self._send(events.MEDIA_UPDATED, {"userId": self.user_id})

    def publish_activity(self, event: ActivityEvent, *, to_backend: bool = True) -> None:
        """行为事件外发：不等待、不重试，失败只记日志"""
        if self._closed:
            return
        if to_backend and self.activity_sink is not None:
            self._spawn(self._deliver(event))
        self._spawn(self._send(events.ACTIVITY, {"userId": self.user_id, "activity": event.to_dict()}))

    async def _deliver(self, event: ActivityEvent) -> None:
        try:
            await self.activity_sink(event)
        except Exception as exc:
            logger.warning(
                "行为日志上报失败，已丢弃",
                extra=logger_extra({"activity": event.type, "error": str(exc)}),
            )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def aclose(self, timeout: float = 2.0) -> None:
        """等待已发出的行为事件投递完成（超时后取消），之后不再外发"""
        self._closed = True
        pending = list(self._background)
        if not pending:
            return
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
