"""
桥接传输实现 - 通过 WebSocket 连接外部 WhatsApp 桥接服务。

架构特点：
- 桥接模式：Python <-> WebSocket <-> Node.js Bridge <-> WhatsApp Web
- 每个会话一条独立的 WebSocket 连接，桥接服务按 session 字段区分账号
- 本模块不做重连：连接断开时上报一个非终止的 connection_close，
  由 ConnectionSupervisor 按重连策略统一处理

消息协议（Python <-> Bridge，JSON）：
- 发出 auth   ：{"type": "auth", "token", "session", "credentials"}
- 收到 qr     ：{"type": "qr", "qr": "..."}
- 收到 open   ：{"type": "open"}
- 收到 close  ：{"type": "close", "code": 401, "loggedOut": true, "reason": "..."}
- 收到 messages：{"type": "messages", "messages": [...]}
- 收到 creds  ：{"type": "creds", "creds": {...}}
- 收到 error  ：{"type": "error", "error": "..."}
- 发出 send   ：{"type": "send", "to": "<jid>", "text": "..."}

依赖：
- websockets：Python WebSocket 客户端库
"""

import asyncio
import json
from typing import Any

import websockets
from loguru import logger

from zapbot.errors import TransportError
from zapbot.transport.base import (
    CloseCause,
    Transport,
    TransportEventKind,
    TransportHandle,
    TransportMessage,
)


class BridgeHandle(TransportHandle):
    """
    单个会话的桥接连接句柄。

    属性:
        _ws: WebSocket 连接对象
        _reader: 后台读取任务
        _closed: 是否已被本地主动关闭（主动关闭不再上报 connection_close）
        _close_reported: 是否已经上报过 connection_close（每条连接最多上报一次）
    """

    def __init__(self, session_id: str, ws: Any):
        super().__init__(session_id)
        self._ws = ws
        self._reader: asyncio.Task | None = None
        self._closed = False
        self._close_reported = False

    def start_reader(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        """持续读取桥接服务的消息，连接异常断开时上报临时断线。"""
        try:
            async for raw in self._ws:
                await self._handle_bridge_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Bridge connection for session {self.session_id} lost: {e}")
        if not self._closed:
            await self._report_close(CloseCause(reason="bridge connection lost"))

    async def _report_close(self, cause: CloseCause) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        await self._emit(TransportEventKind.CLOSE, cause)

    async def _handle_bridge_message(self, raw: str | bytes) -> None:
        """
        按 type 字段分发桥接服务发来的消息。

        参数:
            raw: 原始 JSON 字符串
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge: {str(raw)[:100]}")
            return

        msg_type = data.get("type")

        if msg_type == "qr":
            await self._emit(TransportEventKind.QR, str(data.get("qr", "")))

        elif msg_type == "open":
            await self._emit(TransportEventKind.OPEN)

        elif msg_type == "close":
            code = data.get("code")
            await self._report_close(CloseCause(
                code=int(code) if code is not None else None,
                reason=str(data.get("reason", "")),
                logged_out=bool(data.get("loggedOut", False)),
            ))

        elif msg_type == "messages":
            batch = [TransportMessage.from_raw(m) for m in data.get("messages", []) if isinstance(m, dict)]
            if batch:
                await self._emit(TransportEventKind.MESSAGES, batch)

        elif msg_type == "creds":
            creds = data.get("creds")
            if isinstance(creds, dict):
                await self._emit(TransportEventKind.CREDS, creds)

        elif msg_type == "error":
            logger.error(f"WhatsApp bridge error for session {self.session_id}: {data.get('error')}")

        else:
            logger.debug(f"Ignoring bridge message type {msg_type!r}")

    async def send(self, recipient: str, text: str) -> None:
        if self._closed or self._close_reported:
            raise TransportError(f"Bridge connection for session {self.session_id} is closed")
        payload = {"type": "send", "to": recipient, "text": text}
        try:
            await self._ws.send(json.dumps(payload))
        except Exception as e:
            raise TransportError(f"Error sending WhatsApp message: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except (asyncio.CancelledError, Exception):
                pass
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing bridge connection: {e}")


class BridgeTransport(Transport):
    """
    WebSocket 桥接传输。

    参数:
        bridge_url: 桥接服务地址（如 ws://localhost:3001）
        bridge_token: 桥接认证令牌（可选但推荐设置）
        connect_timeout: 建立连接的超时时间（秒）
    """

    def __init__(self, bridge_url: str, bridge_token: str = "", connect_timeout: float = 10.0):
        self.bridge_url = bridge_url
        self.bridge_token = bridge_token
        self.connect_timeout = connect_timeout

    async def open(self, session_id: str, credentials: dict[str, Any] | None) -> BridgeHandle:
        logger.info(f"Connecting session {session_id} to WhatsApp bridge at {self.bridge_url}...")
        try:
            ws = await asyncio.wait_for(websockets.connect(self.bridge_url), timeout=self.connect_timeout)
            await ws.send(json.dumps({
                "type": "auth",
                "token": self.bridge_token,
                "session": session_id,
                "credentials": credentials,
            }))
        except Exception as e:
            raise TransportError(f"Cannot reach WhatsApp bridge at {self.bridge_url}: {e}") from e

        handle = BridgeHandle(session_id, ws)
        # 读取任务在调用方下一次 await 时才开始运行，调用方此前注册的回调不会错过事件
        handle.start_reader()
        return handle
