"""
连接监督器模块 - 每个会话一条运行时连接的生命周期管理。

本模块是 zapbot 中唯一直接持有传输连接的地方，负责：
1. 为每个会话 ID 维护至多一个 SessionRuntime（连接句柄 + 事件队列 + 工作任务）
2. 驱动会话状态机，并在每次状态迁移时"先持久化、后发布"
3. 按重连策略处理非终止性断线，终止性断线（登出 / 401）直接进入 disconnected
4. 把入站消息批次转交给 MessagePipeline
5. 持久化传输层推送的凭证更新

【状态机】（初始 pending）
  pending ──qr──────────────→ qr
  pending/qr ──open─────────→ connected
  任意 ──close(终止性)───────→ disconnected（不再重连，释放运行时）
  任意 ──close(非终止性)─────→ pending（安排一次延迟重连）

【事件顺序】
传输句柄的回调只负责把事件放进该会话的队列，由该会话唯一的工作任务按到达顺序逐个处理，
因此同一会话的事件（包括消息批次）从不并发处理；不同会话的工作任务之间互不影响。
每次建立连接都会分配新的"代号"（generation），旧连接残留的事件会被直接丢弃。

【重连】
重连是一个与运行时绑定的可取消任务：睡眠结束后先确认运行时仍被登记且仍被期望，
再替换连接。stop() 会取消尚未触发的重连任务，并清除"仍被期望"标记。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from zapbot.bus.events import QrEvent, StatusEvent
from zapbot.bus.queue import EventBus
from zapbot.errors import SessionNotConnected
from zapbot.pipeline.pipeline import MessagePipeline
from zapbot.session.credentials import CredentialStore
from zapbot.store.base import ConversationStore
from zapbot.store.models import SessionStatus
from zapbot.transport.base import (
    CloseCause,
    Transport,
    TransportEventKind,
    TransportHandle,
    TransportMessage,
)


@dataclass
class ReconnectPolicy:
    """
    重连退避策略：delay = min(base_delay * factor ** attempts, max_delay)。

    默认 factor=1.0，即固定 3 秒；factor > 1 时为带上限的指数退避。
    """

    base_delay: float = 3.0
    factor: float = 1.0
    max_delay: float = 60.0

    def delay(self, attempts: int) -> float:
        return min(self.base_delay * (self.factor ** attempts), self.max_delay)


@dataclass(eq=False)
class SessionRuntime:
    """
    单个会话的运行时状态（只在内存中，由监督器独占）。

    属性:
        session_id: 会话 ID
        handle: 当前连接句柄（重连间隙为 None）
        generation: 当前连接代号，每次建立连接递增
        connected: 当前连接是否处于已连接状态
        desired: 是否仍希望保持连接（stop / 终止性断线后为 False）
        attempts: 连续重连次数（连接成功后清零）
        queue: 传输事件队列，元素为 (generation, kind, args)
        worker: 消费队列的工作任务
        reconnect_task: 尚未触发的重连任务（任意时刻至多一个）
    """

    session_id: str
    handle: TransportHandle | None = None
    generation: int = 0
    connected: bool = False
    desired: bool = True
    attempts: int = 0
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    worker: asyncio.Task | None = None
    reconnect_task: asyncio.Task | None = None


class ConnectionSupervisor:
    """
    会话连接监督器。

    属性:
        transport: 传输连接工厂
        store: 持久化存储（会话状态）
        bus: 事件总线
        credentials: 凭证存储
        pipeline: 入站消息流水线（为 None 时只管理连接，不处理消息）
        policy: 重连策略
        _runtimes: 会话 ID → 运行时
    """

    def __init__(
        self,
        transport: Transport,
        store: ConversationStore,
        bus: EventBus,
        credentials: CredentialStore,
        pipeline: MessagePipeline | None = None,
        policy: ReconnectPolicy | None = None,
    ):
        self.transport = transport
        self.store = store
        self.bus = bus
        self.credentials = credentials
        self.pipeline = pipeline
        self.policy = policy if policy is not None else ReconnectPolicy()
        self._runtimes: dict[str, SessionRuntime] = {}

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    async def start(self, session_id: str) -> bool:
        """
        为会话启动运行时连接。

        幂等：该会话已有运行时则什么也不做并返回 False。
        运行时在第一次 await 之前登记，所以并发调用也不会产生两条连接。
        建立连接失败按非终止性断线处理（进入 pending 并安排重连）。
        """
        if session_id in self._runtimes:
            logger.debug(f"Session {session_id} already has a live runtime")
            return False

        runtime = SessionRuntime(session_id=session_id)
        self._runtimes[session_id] = runtime
        runtime.worker = asyncio.create_task(self._run_worker(runtime))
        logger.info(f"Starting session {session_id}")
        await self._connect(runtime)
        return True

    async def stop(self, session_id: str) -> bool:
        """
        停止会话的运行时连接。

        取消待触发的重连、尽力关闭连接、移除运行时登记。
        不修改持久化的会话状态，由调用方决定是否标记 disconnected 或删除凭证。

        返回:
            True 表示确实停止了一个运行时
        """
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            return False
        await self._teardown(runtime)
        logger.info(f"Stopped session {session_id}")
        return True

    async def stop_all(self) -> None:
        """停止所有运行时（进程退出时调用）。"""
        for session_id in list(self._runtimes):
            await self.stop(session_id)

    async def send(self, session_id: str, recipient: str, text: str) -> None:
        """
        通过会话的连接发送文本。

        异常:
            SessionNotConnected: 没有运行时，或当前连接不处于已连接状态
            TransportError: 传输层发送失败
        """
        runtime = self._runtimes.get(session_id)
        if runtime is None or runtime.handle is None or not runtime.connected:
            raise SessionNotConnected(session_id)
        await runtime.handle.send(recipient, text)

    def is_live(self, session_id: str) -> bool:
        return session_id in self._runtimes

    def is_connected(self, session_id: str) -> bool:
        runtime = self._runtimes.get(session_id)
        return runtime is not None and runtime.connected

    def has_pending_reconnect(self, session_id: str) -> bool:
        runtime = self._runtimes.get(session_id)
        return bool(runtime and runtime.reconnect_task and not runtime.reconnect_task.done())

    @property
    def live_sessions(self) -> list[str]:
        return list(self._runtimes)

    async def wait_idle(self, session_id: str) -> None:
        """等待该会话队列中已到达的事件全部处理完毕。"""
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            await runtime.queue.join()

    # ------------------------------------------------------------------
    # 连接管理
    # ------------------------------------------------------------------

    async def _connect(self, runtime: SessionRuntime) -> None:
        """建立一条新连接并注册事件回调；失败时向队列投递一个非终止性断线事件。"""
        runtime.generation += 1
        generation = runtime.generation
        session_id = runtime.session_id

        try:
            handle = await self.transport.open(session_id, self.credentials.load(session_id))
        except Exception as e:
            logger.warning(f"Failed to open connection for session {session_id}: {e}")
            cause = CloseCause(reason=f"connect failed: {e}")
            runtime.queue.put_nowait((generation, TransportEventKind.CLOSE, (cause,)))
            return

        # open() 期间会话可能已被 stop，或已被新的连接取代
        if not runtime.desired or generation != runtime.generation:
            await self._release(handle)
            return

        runtime.handle = handle
        for kind in TransportEventKind:
            handle.on(kind, self._listener(runtime, generation, kind))

    def _listener(self, runtime: SessionRuntime, generation: int, kind: TransportEventKind):
        async def _enqueue(*args: Any) -> None:
            runtime.queue.put_nowait((generation, kind, args))
        return _enqueue

    async def _release(self, handle: TransportHandle) -> None:
        """尽力关闭连接，任何异常都只记录。"""
        try:
            await handle.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing connection for session {handle.session_id}: {e}")

    async def _teardown(self, runtime: SessionRuntime) -> None:
        """移除运行时：取消重连、关闭连接、结束工作任务。可在工作任务内部调用。"""
        if self._runtimes.get(runtime.session_id) is runtime:
            del self._runtimes[runtime.session_id]
        runtime.desired = False
        runtime.connected = False

        current = asyncio.current_task()
        task = runtime.reconnect_task
        if task is not None and task is not current and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        runtime.reconnect_task = None
        runtime.generation += 1

        handle, runtime.handle = runtime.handle, None
        if handle is not None:
            await self._release(handle)

        worker = runtime.worker
        if worker is not None and worker is not current and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def _schedule_reconnect(self, runtime: SessionRuntime) -> None:
        """安排一次延迟重连；已有待触发的重连会被替换，保证至多一个。"""
        if not runtime.desired:
            return
        task = runtime.reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        delay = self.policy.delay(runtime.attempts)
        logger.info(f"Reconnecting session {runtime.session_id} in {delay:.1f}s")
        runtime.reconnect_task = asyncio.create_task(self._reconnect_after(runtime, delay))

    async def _reconnect_after(self, runtime: SessionRuntime, delay: float) -> None:
        await asyncio.sleep(delay)
        # 睡眠期间会话可能已被停止或被新的运行时取代
        if not runtime.desired or self._runtimes.get(runtime.session_id) is not runtime:
            return

        runtime.attempts += 1
        old, runtime.handle = runtime.handle, None
        # 旧连接此后发出的事件一律作废
        runtime.generation += 1
        if old is not None:
            await self._release(old)
        await self._connect(runtime)

    # ------------------------------------------------------------------
    # 事件处理（只在工作任务中执行）
    # ------------------------------------------------------------------

    async def _run_worker(self, runtime: SessionRuntime) -> None:
        """逐个处理该会话的传输事件；单个事件的失败不会终止循环。"""
        while runtime.desired:
            generation, kind, args = await runtime.queue.get()
            try:
                if generation != runtime.generation:
                    logger.debug(f"Dropping stale {kind.value} event for session {runtime.session_id}")
                    continue
                await self._dispatch(runtime, kind, args)
            except Exception as e:
                logger.error(f"Error handling {kind.value} for session {runtime.session_id}: {e}")
            finally:
                runtime.queue.task_done()

    async def _dispatch(self, runtime: SessionRuntime, kind: TransportEventKind, args: tuple) -> None:
        if kind is TransportEventKind.QR:
            await self._on_qr(runtime, *args)
        elif kind is TransportEventKind.OPEN:
            await self._on_open(runtime)
        elif kind is TransportEventKind.CLOSE:
            await self._on_close(runtime, *args)
        elif kind is TransportEventKind.MESSAGES:
            await self._on_messages(runtime, *args)
        elif kind is TransportEventKind.CREDS:
            self.credentials.save(runtime.session_id, *args)

    async def _on_qr(self, runtime: SessionRuntime, qr: str) -> None:
        session_id = runtime.session_id
        await self.store.update_session(session_id, status=SessionStatus.QR, qr_payload=qr)
        await self.bus.publish(QrEvent(session_id=session_id, qr=qr))
        logger.info(f"Session {session_id} is waiting for QR scan")

    async def _on_open(self, runtime: SessionRuntime) -> None:
        session_id = runtime.session_id
        runtime.connected = True
        runtime.attempts = 0
        await self.store.update_session(session_id, status=SessionStatus.CONNECTED, qr_payload=None)
        await self.bus.publish(StatusEvent(session_id=session_id, status=SessionStatus.CONNECTED))
        logger.info(f"Session {session_id} connected")

    async def _on_close(self, runtime: SessionRuntime, cause: CloseCause) -> None:
        session_id = runtime.session_id
        runtime.connected = False

        if cause.is_terminal:
            logger.info(f"Session {session_id} logged out ({cause.code} {cause.reason}), not reconnecting")
            try:
                await self.store.update_session(session_id, status=SessionStatus.DISCONNECTED, qr_payload=None)
                await self.bus.publish(StatusEvent(session_id=session_id, status=SessionStatus.DISCONNECTED))
            finally:
                await self._teardown(runtime)
            return

        logger.warning(f"Session {session_id} closed ({cause.code} {cause.reason})")
        try:
            await self.store.update_session(session_id, status=SessionStatus.PENDING)
            await self.bus.publish(StatusEvent(session_id=session_id, status=SessionStatus.PENDING))
        finally:
            self._schedule_reconnect(runtime)

    async def _on_messages(self, runtime: SessionRuntime, batch: list[TransportMessage]) -> None:
        """批次中每条合格消息都单独走一遍流水线；一条失败不影响后面的消息。"""
        if self.pipeline is None:
            return
        for message in batch:
            try:
                await self.pipeline.handle_transport_message(runtime.session_id, message)
            except Exception as e:
                logger.error(f"Failed to process message {message.id} in session {runtime.session_id}: {e}")
