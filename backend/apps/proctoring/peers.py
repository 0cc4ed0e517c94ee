# apps/proctoring/peers.py

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Protocol

from apps.common.infra.logger import get_logger, logger_extra

from .schemas import MediaStreamHandle, MediaTrackHandle, PeerLink, PeerState

logger = get_logger(__name__)


class PeerConnection(Protocol):
    """单条 WebRTC 连接的平台接口；close 必须是同步的"""

    async def add_track(self, track: MediaTrackHandle, stream: MediaStreamHandle) -> None: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def create_answer(self) -> dict: ...

    async def set_local_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    def close(self) -> None: ...


class PeerConnectionFactory(Protocol):
    async def create(self, remote_id: str, on_ice_candidate: Callable[[dict], None]) -> PeerConnection: ...


class StreamSource(Protocol):
    def granted_streams(self) -> list[MediaStreamHandle]: ...


class AnswerSink(Protocol):
    async def send_answer(self, target: str, payload: dict) -> bool: ...

    async def send_ice_candidate(self, target: str, candidate: dict) -> bool: ...


_OFFER = "offer"
_REMOTE_ICE = "remote_ice"
_LOCAL_ICE = "local_ice"
_REMOTE_LEFT = "remote_left"


class PeerConnectionManager:
    """
    对等连接管理器：每个远端（监考端）至多一条 PeerLink

    并发模型：
    - 每个 remote_id 一个 asyncio.Queue + 一个 worker，同一链路内事件严格 FIFO
    - 不同链路互不等待，之间没有顺序保证
    - 本地生成的 ICE 候选也走同一队列，保证先发 answer 再发候选

    资源：
    - 本地流只借用（从媒体采集闸门读取），从不停止或替换轨道
    - teardown_all 同步关闭全部连接，只在会话销毁时调用一次
    """

    def __init__(self, factory: PeerConnectionFactory, signaling: AnswerSink, streams: StreamSource):
        self.factory = factory
        self.signaling = signaling
        self.streams = streams
        self._links: dict[str, PeerLink] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._closed = False

    # ------------------------
    # 入站事件
    # ------------------------

    def handle_remote_offer(self, remote_id: str, offer: dict) -> None:
        self._enqueue(remote_id, (_OFFER, offer), create=True)

    def handle_remote_ice_candidate(self, remote_id: str, candidate: dict) -> None:
        """链路不存在且没有待处理的 offer 时直接丢弃（ICE 竞态属于正常现象）"""
        if remote_id not in self._queues:
            logger.debug("未知链路的 ICE 候选，已丢弃", extra=logger_extra({"remote_id": remote_id}))
            return
        self._enqueue(remote_id, (_REMOTE_ICE, candidate))

    def handle_remote_left(self, remote_id: str) -> None:
        if remote_id not in self._queues:
            return
        self._enqueue(remote_id, (_REMOTE_LEFT,))

    def _enqueue(self, remote_id: str, item: tuple, *, create: bool = False) -> None:
        if self._closed:
            return
        queue = self._queues.get(remote_id)
        if queue is None:
            if not create:
                return
            queue = asyncio.Queue()
            self._queues[remote_id] = queue
            self._workers[remote_id] = asyncio.create_task(self._worker(remote_id, queue))
        queue.put_nowait(item)

    async def _worker(self, remote_id: str, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                kind = item[0]
                if kind == _OFFER:
                    await self._apply_offer(remote_id, item[1])
                elif kind == _REMOTE_ICE:
                    await self._apply_remote_ice(remote_id, item[1])
                elif kind == _LOCAL_ICE:
                    await self._apply_local_ice(item[1], item[2])
                elif kind == _REMOTE_LEFT:
                    self._close_remote(remote_id)
                    logger.info("监考端已断开，关闭对等连接", extra=logger_extra({"remote_id": remote_id}))
                    if queue.empty():
                        self._queues.pop(remote_id, None)
                        self._workers.pop(remote_id, None)
                        return
            except Exception:
                logger.warning("对等连接事件处理异常", extra=logger_extra({"remote_id": remote_id}), exc_info=True)
            finally:
                queue.task_done()

    # ------------------------
    # 链路处理
    # ------------------------

    async def _apply_offer(self, remote_id: str, offer: dict) -> None:
        # 同一远端的第二个 offer 替换现有链路
        self._close_remote(remote_id)
        link = PeerLink(remote_id=remote_id, connection=None)
        try:
            link.connection = await self.factory.create(
                remote_id, lambda candidate: self._enqueue(remote_id, (_LOCAL_ICE, link, candidate))
            )
            self._links[remote_id] = link
            for stream in self.streams.granted_streams():
                for track in stream.tracks:
                    await link.connection.add_track(track, stream)
            await link.connection.set_remote_description(offer)
            answer = await link.connection.create_answer()
            await link.connection.set_local_description(answer)
        except Exception as exc:
            # 协商失败：关闭半成品连接，不发送 answer，由监考端负责重试
            logger.warning(
                "处理 offer 失败，已关闭连接",
                extra=logger_extra({"remote_id": remote_id, "error": str(exc)}),
            )
            self._close_link(link)
            if self._links.get(remote_id) is link:
                self._links.pop(remote_id, None)
            return
        if link.state is PeerState.CLOSED:
            return
        if await self.signaling.send_answer(remote_id, answer):
            link.state = PeerState.CONNECTED
            logger.info("对等连接协商完成", extra=logger_extra({"remote_id": remote_id}))

    async def _apply_remote_ice(self, remote_id: str, candidate: dict) -> None:
        link = self._links.get(remote_id)
        if link is None or link.state is PeerState.CLOSED:
            return
        await link.connection.add_ice_candidate(candidate)

    async def _apply_local_ice(self, link: PeerLink, candidate: dict) -> None:
        # 被替换或已关闭的链路产生的候选不再外发
        if link.state is PeerState.CLOSED or self._links.get(link.remote_id) is not link:
            return
        await self.signaling.send_ice_candidate(link.remote_id, candidate)

    def _close_remote(self, remote_id: str) -> None:
        link = self._links.pop(remote_id, None)
        if link is not None:
            self._close_link(link)

    def _close_link(self, link: PeerLink) -> None:
        if link.state is PeerState.CLOSED:
            return
        link.state = PeerState.CLOSED
        if link.connection is None:
            return
        try:
            link.connection.close()
        except Exception:
            logger.warning("关闭对等连接失败", extra=logger_extra({"remote_id": link.remote_id}), exc_info=True)

    # ------------------------
    # 销毁 / 只读
    # ------------------------

    def teardown_all(self) -> None:
        """同步关闭全部链路并停止所有 worker，不留悬挂连接"""
        if self._closed:
            return
        self._closed = True
        for worker in self._workers.values():
            worker.cancel()
        for link in list(self._links.values()):
            self._close_link(link)
        self._links.clear()
        self._queues.clear()
        self._workers.clear()

    def links(self) -> dict[str, str]:
        return {remote_id: link.state.value for remote_id, link in self._links.items()}

    def get_link(self, remote_id: str) -> Optional[PeerLink]:
        return self._links.get(remote_id)

    async def drain(self) -> None:
        """等待当前所有链路队列处理完毕"""
        for queue in list(self._queues.values()):
            await queue.join()
