"""
传输层模块 - 聊天传输连接的抽象与默认实现。

- base.py：Transport / TransportHandle 接口、CloseCause、TransportMessage
- bridge.py：基于 WebSocket 桥接服务的实现（BridgeTransport）
"""

from zapbot.transport.base import (
    CloseCause,
    Transport,
    TransportEventKind,
    TransportHandle,
    TransportMessage,
)

__all__ = ["Transport", "TransportHandle", "TransportEventKind", "CloseCause", "TransportMessage"]
