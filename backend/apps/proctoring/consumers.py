# -*- coding: utf-8 -*-
"""
监考 WebSocket 消费者

- ParticipantSessionConsumer：选手端，一条连接对应一个 SessionCoordinator
- ProctorMonitorConsumer：监考端（管理员），按比赛分组接收选手上线/下线、应答、ICE、行为事件

两端经 channel layer 交换信令，PeerLink 的 remote_id 即监考端连接的 channel_name

注意：Channels 对同一连接的消息串行处理，耗时操作（需要等待浏览器 RPC 回复）
由协调器派生为独立任务，处理函数本身不能等待这些操作完成
"""

from __future__ import annotations

import asyncio
from typing import Optional

from apps.common.consumers import BaseAuthorizedConsumer
from apps.common.exceptions import BadRequestError, BizError
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.request_context import bind_session_context

from . import coordinator as coordinator_module
from . import events, registry
from .coordinator import SessionCoordinator
from .signaling import ChannelLayerTransport

logger = get_logger(__name__)

CLOSE_REPLACED = 4409
CLOSE_UNAVAILABLE = 4503
CLOSE_CONCLUDED = 1000

LAYER_SESSION_REPLACED = "session.replaced"


def _contest_id(scope) -> int:
    return int(scope["url_route"]["kwargs"]["contest_id"])


class ParticipantSessionConsumer(BaseAuthorizedConsumer):
    """
    选手端会话连接：ws/proctoring/contests/<contest_id>/session/
    - 同一选手重复连接时，先销毁旧协调器并通知旧连接关闭
    - 断开时销毁协调器（作答本身不结束，可续连）
    """

    coordinator: Optional[SessionCoordinator] = None
    contest_id: int = 0
    _start_task: Optional[asyncio.Task] = None

    async def on_authorized(self):
        user = self.user
        self.contest_id = _contest_id(self.scope)
        coordinator = await coordinator_module.build_coordinator(
            contest_id=self.contest_id,
            user_id=user.id,
            token=self.scope.get("token") or "",
            send=self.send_json,
            transport=ChannelLayerTransport(
                self.channel_layer, contest_id=self.contest_id, channel_name=self.channel_name
            ),
        )
        coordinator.on_concluded = self._on_concluded
        coordinator.channel_name = self.channel_name
        self.coordinator = coordinator
        bind_session_context(
            contest_id=self.contest_id,
            session_id=coordinator.session.session_id,
            user_id=user.id,
            username=getattr(user, "username", ""),
            path=self.scope.get("path", ""),
            ip=self.client_ip,
        )

        previous = registry.register(coordinator)
        if previous is not None:
            logger.info("同一选手重复连接，替换旧会话", extra=logger_extra({"previous": previous.session.session_id}))
            old_channel = getattr(previous, "channel_name", "")
            await previous.teardown()
            if old_channel and self.channel_layer is not None:
                await self.channel_layer.send(old_channel, {"type": LAYER_SESSION_REPLACED})

        if self.channel_layer is not None:
            await self.channel_layer.group_add(events.participant_group(self.contest_id), self.channel_name)
        self._start_task = asyncio.create_task(self._start())

    async def _start(self):
        try:
            await self.coordinator.start()
        except BizError as exc:
            logger.warning("会话启动失败", extra=logger_extra({"error_code": exc.code, "reason": exc.message}))
            await self.send_json({"event": events.EVENT_ERROR, "code": exc.code, "message": exc.message,
                                  "operation": "start"})
            await self.close(code=CLOSE_UNAVAILABLE)
        except Exception:
            logger.error("会话启动异常", exc_info=True)
            await self.close(code=CLOSE_UNAVAILABLE)

    async def _on_concluded(self):
        await self.close(code=CLOSE_CONCLUDED)

    async def on_disconnect(self, close_code):
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        if self.channel_layer is not None and self.contest_id:
            await self.channel_layer.group_discard(events.participant_group(self.contest_id), self.channel_name)
        if self.coordinator is not None:
            await self.coordinator.teardown()

    async def handle_json(self, content):
        if self.coordinator is None:
            return None
        await self.coordinator.dispatch(content)
        return None

    # ------------------------
    # channel layer：监考端 -> 选手
    # ------------------------

    async def signal_offer(self, event):
        await self.coordinator.handle_signal(
            events.OFFER, {"sender": event.get("sender"), "payload": event.get("payload")}
        )

    async def signal_ice_candidate(self, event):
        await self.coordinator.handle_signal(
            events.ICE_CANDIDATE, {"sender": event.get("sender"), "candidate": event.get("candidate")}
        )

    async def signal_monitor_joined(self, event):
        await self.coordinator.handle_signal(events.MONITOR_JOINED, {"monitorId": event.get("sender")})

    async def signal_monitor_left(self, event):
        await self.coordinator.handle_signal(events.MONITOR_LEFT, {"monitorId": event.get("sender")})

    async def session_replaced(self, event):
        await self.send_json({"event": events.EVENT_ERROR, "code": CLOSE_REPLACED,
                              "message": "该作答已在其他窗口打开", "operation": "connect"})
        await self.close(code=CLOSE_REPLACED)


class ProctorMonitorConsumer(BaseAuthorizedConsumer):
    """
    监考端连接：ws/proctoring/contests/<contest_id>/monitor/
    - 仅管理员可连接
    - 上线时通知全部选手重新宣告上线，以便对每位选手发起 offer
    - 断开时通知全部选手关闭与自己的 PeerLink
    """

    require_staff = True
    contest_id: int = 0

    async def on_authorized(self):
        self.contest_id = _contest_id(self.scope)
        bind_session_context(
            contest_id=self.contest_id,
            session_id=self.channel_name[-12:],
            user_id=self.user.id,
            username=getattr(self.user, "username", ""),
            path=self.scope.get("path", ""),
            ip=self.client_ip,
        )
        if self.channel_layer is None:
            return None
        await self.channel_layer.group_add(events.monitor_group(self.contest_id), self.channel_name)
        await self.channel_layer.group_send(
            events.participant_group(self.contest_id),
            {"type": events.LAYER_MONITOR_JOINED, "sender": self.channel_name},
        )
        logger.info("监考端已连接")
        return None

    async def on_disconnect(self, close_code):
        if self.channel_layer is None or not self.contest_id:
            return None
        await self.channel_layer.group_discard(events.monitor_group(self.contest_id), self.channel_name)
        await self.channel_layer.group_send(
            events.participant_group(self.contest_id),
            {"type": events.LAYER_MONITOR_LEFT, "sender": self.channel_name},
        )
        return None

    async def handle_json(self, content):
        """监考端上行：offer{target, payload} / ice-candidate{target, candidate}"""
        if not isinstance(content, dict):
            return None
        msg_type = content.get("type")
        target = content.get("target")
        if msg_type not in (events.OFFER, events.ICE_CANDIDATE) or not isinstance(target, str) or not target:
            exc = BadRequestError(message="信令格式错误")
            await self.send_json({"event": events.EVENT_ERROR, "code": exc.code, "message": exc.message})
            return None
        if msg_type == events.OFFER:
            message = {"type": events.LAYER_OFFER, "sender": self.channel_name, "payload": content.get("payload")}
        else:
            message = {
                "type": events.LAYER_ICE_CANDIDATE,
                "sender": self.channel_name,
                "candidate": content.get("candidate"),
            }
        await self.channel_layer.send(target, message)
        return None

    # ------------------------
    # channel layer：选手 -> 监考端
    # ------------------------

    async def signal_participant_joined(self, event):
        await self.send_json(
            {"event": events.PARTICIPANT_JOINED, "userId": event.get("userId"), "socketId": event.get("sender")}
        )

    async def signal_participant_left(self, event):
        await self.send_json(
            {"event": events.PARTICIPANT_LEFT, "userId": event.get("userId"), "socketId": event.get("sender")}
        )

    async def signal_answer(self, event):
        await self.send_json({"event": events.ANSWER, "sender": event.get("sender"), "payload": event.get("payload")})

    async def signal_ice_candidate(self, event):
        await self.send_json(
            {"event": events.ICE_CANDIDATE, "sender": event.get("sender"), "candidate": event.get("candidate")}
        )

    async def signal_activity(self, event):
        activity = event.get("activity") or {}
        await self.send_json(
            {
                "event": events.ACTIVITY,
                "userId": event.get("userId"),
                "socketId": event.get("sender"),
                **activity,
            }
        )

    async def signal_media_updated(self, event):
        await self.send_json(
            {"event": events.MEDIA_UPDATED, "userId": event.get("userId"), "socketId": event.get("sender")}
        )
