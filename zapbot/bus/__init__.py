"""
事件总线模块 - 会话状态、二维码与消息事件的扇出。

事件流向：
  传输层事件 → ConnectionSupervisor → 持久化 → EventBus → 订阅者（推送层、日志等）
  入站消息 → MessagePipeline → 持久化 → EventBus → 订阅者

- events.py：带标签的事件类型（QrEvent / StatusEvent / MessageEvent）
- queue.py：EventBus 实现（回调订阅 + 队列监听）
"""

from zapbot.bus.events import BusEvent, EventKind, MessageEvent, QrEvent, StatusEvent
from zapbot.bus.queue import EventBus, Subscription

__all__ = ["EventBus", "Subscription", "BusEvent", "EventKind", "QrEvent", "StatusEvent", "MessageEvent"]
