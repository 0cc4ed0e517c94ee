# apps/proctoring/media.py

from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional, Protocol

from apps.common.exceptions import MediaPermissionError
from apps.common.infra.logger import get_logger, logger_extra

from .schemas import MediaKind, MediaPermissionState, MediaStreamHandle, PermissionState

logger = get_logger(__name__)

CAMERA_CONSTRAINTS = {"video": True, "audio": True}
SCREEN_CONSTRAINTS = {"video": True, "audio": False}


class MediaDevices(Protocol):
    """平台媒体采集接口（由浏览器桥接实现，测试中替换为假对象）"""

    async def get_user_media(self, constraints: dict) -> MediaStreamHandle: ...

    async def get_display_media(self, constraints: dict) -> MediaStreamHandle: ...

    def on_ended(self, stream: MediaStreamHandle, callback: Callable[[], None]) -> None: ...

    def stop(self, stream: MediaStreamHandle) -> None: ...


class MediaCaptureGate:
    """
    媒体采集闸门：摄像头/麦克风/屏幕共享的授权与流所有权

    - 每种能力只修改自己的授权状态，失败不自动重试
    - 已授权时重复请求直接返回缓存的流；并发的重复请求共享同一次弹窗
    - 屏幕共享被用户在浏览器外部终止时，异步降级为 DENIED 并清空流引用
    - 流只由本组件停止，对等连接管理器只借用引用
    """

    def __init__(self, devices: MediaDevices):
        self.devices = devices
        self._states: dict[MediaKind, MediaPermissionState] = {kind: MediaPermissionState(kind=kind) for kind in MediaKind}
        self._inflight: dict[str, asyncio.Future] = {}
        self._listener: Optional[Callable[[MediaKind, MediaPermissionState], None]] = None
        self._released = False

    def set_listener(self, listener: Optional[Callable[[MediaKind, MediaPermissionState], None]]) -> None:
        """授权状态变化回调（含屏幕共享的异步降级）"""
        self._listener = listener

    # ------------------------
    # 请求授权
    # ------------------------

    async def request_camera_and_microphone(self) -> MediaStreamHandle:
        camera = self._states[MediaKind.CAMERA]
        microphone = self._states[MediaKind.MICROPHONE]
        if camera.state is PermissionState.GRANTED and microphone.state is PermissionState.GRANTED and camera.stream:
            return camera.stream
        return await self._shared("user", self._acquire_user_media)

    async def request_screen_share(self) -> MediaStreamHandle:
        screen = self._states[MediaKind.SCREEN]
        if screen.state is PermissionState.GRANTED and screen.stream:
            return screen.stream
        return await self._shared("display", self._acquire_display_media)

    async def request(self, kind: MediaKind) -> MediaStreamHandle:
        if kind is MediaKind.SCREEN:
            return await self.request_screen_share()
        return await self.request_camera_and_microphone()

    async def _shared(self, key: str, acquire) -> MediaStreamHandle:
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            stream = await acquire()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # 防止无人等待时出现 "exception was never retrieved"
            future.exception()
            raise
        else:
            future.set_result(stream)
            return stream
        finally:
            self._inflight.pop(key, None)

    async def _acquire_user_media(self) -> MediaStreamHandle:
        try:
            stream = await self.devices.get_user_media(dict(CAMERA_CONSTRAINTS))
        except Exception as exc:
            reason = _denial_reason(exc)
            self._update(MediaKind.CAMERA, PermissionState.DENIED, reason=reason)
            self._update(MediaKind.MICROPHONE, PermissionState.DENIED, reason=reason)
            logger.warning("摄像头/麦克风授权失败", extra=logger_extra({"reason": reason}))
            raise MediaPermissionError(kind=MediaKind.CAMERA.value, reason=reason) from exc
        self._update(MediaKind.CAMERA, PermissionState.GRANTED, stream=stream)
        self._update(MediaKind.MICROPHONE, PermissionState.GRANTED, stream=stream)
        logger.info("摄像头/麦克风已授权", extra=logger_extra({"stream_id": stream.stream_id}))
        return stream

    async def _acquire_display_media(self) -> MediaStreamHandle:
        try:
            stream = await self.devices.get_display_media(dict(SCREEN_CONSTRAINTS))
        except Exception as exc:
            reason = _denial_reason(exc)
            self._update(MediaKind.SCREEN, PermissionState.DENIED, reason=reason)
            logger.warning("屏幕共享授权失败", extra=logger_extra({"reason": reason}))
            raise MediaPermissionError(kind=MediaKind.SCREEN.value, reason=reason) from exc
        self._update(MediaKind.SCREEN, PermissionState.GRANTED, stream=stream)
        self.devices.on_ended(stream, lambda: self._on_screen_ended(stream))
        logger.info("屏幕共享已授权", extra=logger_extra({"stream_id": stream.stream_id}))
        return stream

    def _on_screen_ended(self, stream: MediaStreamHandle) -> None:
        """用户通过浏览器/系统界面停止共享：只处理仍在持有的同一条流"""
        screen = self._states[MediaKind.SCREEN]
        if screen.stream is None or screen.stream.stream_id != stream.stream_id:
            return
        logger.warning("屏幕共享已被用户终止", extra=logger_extra({"stream_id": stream.stream_id}))
        self._update(MediaKind.SCREEN, PermissionState.DENIED, reason="ended")

    def _update(
            self,
            kind: MediaKind,
            state: PermissionState,
            *,
            stream: Optional[MediaStreamHandle] = None,
            reason: str = "",
    ) -> None:
        entry = self._states[kind]
        entry.state = state
        entry.stream = stream if state is PermissionState.GRANTED else None
        entry.reason = reason
        if self._listener is not None:
            self._listener(kind, entry)

    # ------------------------
    # 只读视图
    # ------------------------

    def all_granted(self, required: Iterable[MediaKind]) -> bool:
        return all(self._states[kind].state is PermissionState.GRANTED for kind in required)

    def state_of(self, kind: MediaKind) -> PermissionState:
        return self._states[kind].state

    def granted_streams(self) -> list[MediaStreamHandle]:
        """当前已授权的流（去重后借出引用，调用方不得停止）"""
        streams: list[MediaStreamHandle] = []
        seen: set[str] = set()
        for entry in self._states.values():
            if entry.state is PermissionState.GRANTED and entry.stream and entry.stream.stream_id not in seen:
                seen.add(entry.stream.stream_id)
                streams.append(entry.stream)
        return streams

    def snapshot(self) -> dict:
        return {kind.value: entry.to_dict() for kind, entry in self._states.items()}

    # ------------------------
    # 释放
    # ------------------------

    def release(self) -> None:
        """会话销毁时停止所有持有的流，只执行一次"""
        if self._released:
            return
        self._released = True
        for stream in self.granted_streams():
            try:
                self.devices.stop(stream)
            except Exception:
                logger.warning("停止媒体流失败", extra=logger_extra({"stream_id": stream.stream_id}), exc_info=True)
        for entry in self._states.values():
            entry.stream = None


def _denial_reason(exc: Exception) -> str:
    """浏览器错误名（NotAllowedError / NotFoundError ...）优先，其次为异常类名"""
    return getattr(exc, "name", "") or exc.__class__.__name__
