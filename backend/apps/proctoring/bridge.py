# apps/proctoring/bridge.py

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Optional

from apps.common.exceptions import BridgeCallError, BridgeTimeoutError
from apps.common.infra.logger import get_logger, logger_extra

from . import events
from .schemas import MediaStreamHandle, MediaTrackHandle

logger = get_logger(__name__)

DEFAULT_RPC_TIMEOUT_SECONDS = 10.0


class BrowserBridge:
    """
    选手端浏览器桥接

    - 所有下行帧经同一个发件队列按序写出（RPC、指令、状态推送不会乱序）
    - call() 发送 rpc 帧并等待浏览器以相同 id 的 rpc_result 帧回复
    - 超时抛 BridgeTimeoutError；连接关闭时挂起的调用以 BridgeCallError 结束
    """

    def __init__(self, send: Callable[[dict], Awaitable[None]], *, timeout: float = DEFAULT_RPC_TIMEOUT_SECONDS):
        self._send = send
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._pending: dict[str, tuple[str, asyncio.Future]] = {}
        self._outbox: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------
    # 下行
    # ------------------------

    def push(self, frame: dict) -> None:
        """推送一帧（不等待写出）"""
        self._enqueue(frame, None)

    def notify(self, method: str, params: Optional[dict] = None) -> None:
        """无需回复的平台指令"""
        self.push({"event": events.EVENT_COMMAND, "method": method, "params": params or {}})

    async def call(self, method: str, params: Optional[dict] = None, *, timeout: Optional[float] = None) -> Any:
        if self._closed:
            raise BridgeCallError(message="浏览器连接已关闭", method=method)
        call_id = str(next(self._ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = (method, future)
        self._enqueue({"event": events.EVENT_RPC, "id": call_id, "method": method, "params": params or {}}, future)
        try:
            return await asyncio.wait_for(future, timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("浏览器调用超时", extra=logger_extra({"method": method, "call_id": call_id}))
            raise BridgeTimeoutError(method=method) from exc
        finally:
            self._pending.pop(call_id, None)

    def _enqueue(self, frame: dict, future: Optional[asyncio.Future]) -> None:
        if self._closed:
            return
        if self._outbox is None:
            self._outbox = asyncio.Queue()
            self._writer = asyncio.create_task(self._write_loop(self._outbox))
        self._outbox.put_nowait((frame, future))

    async def _write_loop(self, outbox: asyncio.Queue) -> None:
        while True:
            frame, future = await outbox.get()
            try:
                await self._send(frame)
            except Exception as exc:
                logger.warning(
                    "下行帧发送失败",
                    extra=logger_extra({"frame_event": frame.get("event"), "error": str(exc)}),
                )
                if future is not None and not future.done():
                    future.set_exception(BridgeCallError(message="下行帧发送失败", method=frame.get("method", "")))
            finally:
                outbox.task_done()

    async def flush(self) -> None:
        """等待发件队列写空"""
        if self._outbox is not None and not self._closed:
            await self._outbox.join()

    # ------------------------
    # 上行
    # ------------------------

    def resolve(self, frame: dict) -> bool:
        """处理 rpc_result 帧；未知或已超时的 id 返回 False"""
        call_id = str(frame.get("id", ""))
        entry = self._pending.get(call_id)
        if entry is None:
            logger.debug("未匹配的 rpc_result，已忽略", extra=logger_extra({"call_id": call_id}))
            return False
        method, future = entry
        if future.done():
            return False
        if frame.get("ok"):
            future.set_result(frame.get("result"))
        else:
            error = frame.get("error") or {}
            future.set_exception(
                BridgeCallError(
                    message=str(error.get("message") or "浏览器端调用失败"),
                    name=str(error.get("name") or ""),
                    method=method,
                )
            )
        return True

    async def close(self) -> None:
        """关闭桥接：写出剩余帧后停止写出任务，并结束所有挂起调用"""
        if self._closed:
            return
        if self._outbox is not None:
            try:
                await asyncio.wait_for(self._outbox.join(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
        for call_id, (method, future) in list(self._pending.items()):
            if not future.done():
                future.set_exception(BridgeCallError(message="浏览器连接已关闭", method=method))
        self._pending.clear()


# ======================
# 平台端口适配
# ======================

class BridgeMediaDevices:
    """MediaDevices 端口：getUserMedia / getDisplayMedia 在浏览器执行，只回传流句柄"""

    def __init__(self, bridge: BrowserBridge, *, prompt_timeout: Optional[float] = None):
        self.bridge = bridge
        self.prompt_timeout = prompt_timeout
        self._ended_callbacks: dict[str, Callable[[], None]] = {}

    async def get_user_media(self, constraints: dict) -> MediaStreamHandle:
        result = await self.bridge.call(
            events.RPC_GET_USER_MEDIA, {"constraints": constraints}, timeout=self.prompt_timeout
        )
        return MediaStreamHandle.from_payload(result or {})

    async def get_display_media(self, constraints: dict) -> MediaStreamHandle:
        result = await self.bridge.call(
            events.RPC_GET_DISPLAY_MEDIA, {"constraints": constraints}, timeout=self.prompt_timeout
        )
        return MediaStreamHandle.from_payload(result or {})

    def on_ended(self, stream: MediaStreamHandle, callback: Callable[[], None]) -> None:
        self._ended_callbacks[stream.stream_id] = callback

    def handle_ended(self, stream_id: str) -> bool:
        """浏览器上报 media_ended（用户在浏览器/系统界面停止共享）"""
        callback = self._ended_callbacks.pop(stream_id, None)
        if callback is None:
            return False
        callback()
        return True

    def stop(self, stream: MediaStreamHandle) -> None:
        self._ended_callbacks.pop(stream.stream_id, None)
        self.bridge.notify(events.CMD_STOP_STREAM, {"stream_id": stream.stream_id})


class BridgeDisplay:
    """Display 端口：全屏、快捷键/切屏/剪贴板监听、键盘锁"""

    def __init__(self, bridge: BrowserBridge):
        self.bridge = bridge

    async def request_fullscreen(self) -> bool:
        return bool(await self.bridge.call(events.RPC_REQUEST_FULLSCREEN))

    def install_guards(self, *, blocked_shortcuts: tuple, report_visibility: bool, report_clipboard: bool) -> None:
        self.bridge.notify(
            events.CMD_INSTALL_GUARDS,
            {
                "blocked_shortcuts": list(blocked_shortcuts),
                "report_visibility": report_visibility,
                "report_clipboard": report_clipboard,
            },
        )

    def remove_guards(self) -> None:
        self.bridge.notify(events.CMD_REMOVE_GUARDS)

    def lock_keyboard(self, keys: tuple) -> None:
        self.bridge.notify(events.CMD_LOCK_KEYBOARD, {"keys": list(keys)})

    def unlock_keyboard(self) -> None:
        self.bridge.notify(events.CMD_UNLOCK_KEYBOARD)


class BridgePeerConnection:
    """浏览器中的一条 RTCPeerConnection，以 peer_id 标识"""

    def __init__(self, bridge: BrowserBridge, peer_id: str, on_close: Callable[[str], None]):
        self.bridge = bridge
        self.peer_id = peer_id
        self._on_close = on_close
        self._closed = False

    async def add_track(self, track: MediaTrackHandle, stream: MediaStreamHandle) -> None:
        await self.bridge.call(
            events.RPC_PEER_ADD_TRACK,
            {"peer_id": self.peer_id, "track_id": track.track_id, "stream_id": stream.stream_id},
        )

    async def set_remote_description(self, description: dict) -> None:
        await self.bridge.call(events.RPC_PEER_SET_REMOTE, {"peer_id": self.peer_id, "description": description})

    async def create_answer(self) -> dict:
        answer = await self.bridge.call(events.RPC_PEER_CREATE_ANSWER, {"peer_id": self.peer_id})
        if not isinstance(answer, dict) or not answer.get("sdp"):
            raise BridgeCallError(message="浏览器返回的 answer 格式错误", method=events.RPC_PEER_CREATE_ANSWER)
        return answer

    async def set_local_description(self, description: dict) -> None:
        await self.bridge.call(events.RPC_PEER_SET_LOCAL, {"peer_id": self.peer_id, "description": description})

    async def add_ice_candidate(self, candidate: dict) -> None:
        await self.bridge.call(events.RPC_PEER_ADD_ICE, {"peer_id": self.peer_id, "candidate": candidate})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_close(self.peer_id)
        self.bridge.notify(events.CMD_PEER_CLOSE, {"peer_id": self.peer_id})


class BridgePeerFactory:
    """
    PeerConnectionFactory 端口
    - 每条连接分配唯一 peer_id（remote_id#序号），同一远端重建链路时旧连接的 ICE 不会串线
    - 浏览器上报的 peer_ice 帧按 peer_id 路由到对应链路的回调
    """

    def __init__(self, bridge: BrowserBridge):
        self.bridge = bridge
        self._seq = itertools.count(1)
        self._ice_handlers: dict[str, Callable[[dict], None]] = {}

    async def create(self, remote_id: str, on_ice_candidate: Callable[[dict], None]) -> BridgePeerConnection:
        peer_id = f"{remote_id}#{next(self._seq)}"
        self._ice_handlers[peer_id] = on_ice_candidate
        try:
            await self.bridge.call(events.RPC_PEER_CREATE, {"peer_id": peer_id, "remote_id": remote_id})
        except Exception:
            self._ice_handlers.pop(peer_id, None)
            raise
        return BridgePeerConnection(self.bridge, peer_id, on_close=self._forget)

    def handle_local_ice(self, peer_id: str, candidate: Any) -> bool:
        handler = self._ice_handlers.get(peer_id)
        if handler is None or not isinstance(candidate, dict):
            return False
        handler(candidate)
        return True

    def _forget(self, peer_id: str) -> None:
        self._ice_handlers.pop(peer_id, None)
