"""
事件总线模块 - 会话生命周期与消息事件的进程内发布/订阅。

本模块实现了 EventBus 类，它是监督器、流水线与外部推送层之间的中枢：

  ConnectionSupervisor ─┐
                        ├─ publish() → EventBus → 订阅者回调 / listen() 队列 → 推送层
  MessagePipeline ──────┘

【核心设计】
- 发布即忘：publish() 不持久化事件，也不会把订阅者的异常抛回发布方
- 显式订阅者列表：每个订阅可以按事件类型和 session_id 过滤
- 多消费者通道：listen() 为每个监听者分配独立的 asyncio.Queue，
  适合推送层"一个客户端一条流"的用法

发布方在调用 publish() 之前必须已经完成持久化，
因此订阅者在收到事件时可以放心地读取存储。
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from zapbot.bus.events import BusEvent, EventKind

EventCallback = Callable[[BusEvent], Awaitable[None]]


@dataclass(eq=False)
class Subscription:
    """
    一条订阅记录。

    属性:
        callback: 异步回调函数
        kinds: 关心的事件类型集合，None 表示全部
        session_id: 只接收该会话的事件，None 表示全部会话
    """

    callback: EventCallback
    kinds: frozenset[EventKind] | None
    session_id: str | None
    _bus: "EventBus"

    def matches(self, event: BusEvent) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        return True

    def unsubscribe(self) -> None:
        """取消订阅（重复调用是安全的）。"""
        self._bus._remove(self)


class EventBus:
    """
    进程内事件总线。

    属性:
        _subscriptions: 当前有效的订阅列表（按订阅顺序依次投递）
        _published: 已发布事件计数（用于状态展示）
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._published = 0

    def subscribe(
        self,
        callback: EventCallback,
        kinds: Iterable[EventKind] | None = None,
        session_id: str | None = None,
    ) -> Subscription:
        """
        注册一个事件回调。

        参数:
            callback: 异步回调，接收事件对象
            kinds: 只接收这些类型的事件（None 表示全部）
            session_id: 只接收该会话的事件（None 表示全部）

        返回:
            Subscription 对象，调用其 unsubscribe() 取消订阅
        """
        sub = Subscription(
            callback=callback,
            kinds=frozenset(kinds) if kinds is not None else None,
            session_id=session_id,
            _bus=self,
        )
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    async def publish(self, event: BusEvent) -> None:
        """
        发布事件给所有匹配的订阅者。

        单个订阅者抛出的异常只记录日志，不影响其他订阅者，也不会传回发布方。
        遍历的是订阅列表的快照，回调里增删订阅不会打乱本次投递。
        """
        self._published += 1
        for sub in list(self._subscriptions):
            if not sub.matches(event):
                continue
            try:
                await sub.callback(event)
            except Exception as e:
                logger.error(f"Error delivering {event.kind.value} event for session {event.session_id}: {e}")

    async def listen(
        self,
        kinds: Iterable[EventKind] | None = None,
        session_id: str | None = None,
    ) -> AsyncIterator[BusEvent]:
        """
        以异步迭代器的形式持续接收事件。

        每个监听者有自己的队列，迭代器关闭（break / 取消）时自动退订。

        用法:
            async for event in bus.listen(session_id="abc"):
                ...
        """
        queue: asyncio.Queue[BusEvent] = asyncio.Queue()

        async def _enqueue(event: BusEvent) -> None:
            queue.put_nowait(event)

        sub = self.subscribe(_enqueue, kinds=kinds, session_id=session_id)
        try:
            while True:
                yield await queue.get()
        finally:
            sub.unsubscribe()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def published_count(self) -> int:
        return self._published
