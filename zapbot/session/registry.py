"""
会话注册表模块 - 对外暴露的全部会话操作的聚合入口。

SessionRegistry 是 HTTP/WebSocket 控制器等外部调用方唯一需要接触的对象：

  create_session / list_sessions / get_session / disconnect
  send_message（API 发起的消息）/ send_text（直接发文本）
  list_conversations / create_conversation / get_messages
  restore（进程启动时恢复）/ shutdown（进程退出时释放）

【生命周期】
进程内只创建一个注册表：启动时 restore() 为所有未断开的会话拉起连接，
退出时 shutdown() 停止全部运行时连接。

【归属校验】
所有操作都接受可选的 owner_id；传入时会话必须属于该用户，否则按不存在处理（NotFoundError），
不向调用方泄露其他用户的会话是否存在。
"""

from loguru import logger

from zapbot.bus.events import StatusEvent
from zapbot.bus.queue import EventBus
from zapbot.errors import NotFoundError
from zapbot.pipeline.pipeline import MessagePipeline
from zapbot.session.credentials import CredentialStore
from zapbot.session.supervisor import ConnectionSupervisor
from zapbot.store.base import ConversationStore
from zapbot.store.models import Conversation, Message, Session, SessionStatus


class SessionRegistry:
    """
    会话聚合根。

    属性:
        store: 持久化存储
        supervisor: 连接监督器
        pipeline: 消息流水线（构造时把它的发送回调绑定到监督器）
        bus: 事件总线
        credentials: 凭证存储
    """

    def __init__(
        self,
        store: ConversationStore,
        supervisor: ConnectionSupervisor,
        pipeline: MessagePipeline,
        bus: EventBus,
        credentials: CredentialStore,
    ):
        self.store = store
        self.supervisor = supervisor
        self.pipeline = pipeline
        self.bus = bus
        self.credentials = credentials

        self.supervisor.pipeline = pipeline
        self.pipeline.bind_sender(supervisor.send)

    # ------------------------------------------------------------------
    # 会话
    # ------------------------------------------------------------------

    async def create_session(self, owner_id: str) -> Session:
        """创建一个 pending 会话并立即启动它的连接。"""
        session = await self.store.create_session(owner_id)
        logger.info(f"Created session {session.id} for owner {owner_id}")
        await self.supervisor.start(session.id)
        return await self.store.get_session(session.id) or session

    async def list_sessions(self, owner_id: str) -> list[Session]:
        """
        列出用户的会话。

        读取时顺带对账：未断开却没有运行时连接的会话会被重新拉起。
        """
        sessions = await self.store.list_sessions(owner_id)
        for session in sessions:
            if session.status != SessionStatus.DISCONNECTED and not self.supervisor.is_live(session.id):
                logger.info(f"Reconciling session {session.id} ({session.status.value}) without a live connection")
                await self.supervisor.start(session.id)
        return sessions

    async def get_session(self, session_id: str, owner_id: str | None = None) -> Session:
        session = await self.store.get_session(session_id)
        if session is None or (owner_id is not None and session.owner_id != owner_id):
            raise NotFoundError("session", session_id)
        return session

    async def disconnect(
        self,
        session_id: str,
        wipe_credentials: bool = False,
        owner_id: str | None = None,
    ) -> None:
        """
        断开会话。

        停止运行时连接并标记为 disconnected；wipe_credentials 为 True 时
        还会删除会话记录（连同其对话和消息）和凭证文件，即"遗忘会话"。
        """
        await self.get_session(session_id, owner_id)
        await self.supervisor.stop(session_id)

        if wipe_credentials:
            await self.store.delete_session(session_id)
            self.credentials.wipe(session_id)
            logger.info(f"Forgot session {session_id} and wiped its credentials")
        else:
            await self.store.update_session(session_id, status=SessionStatus.DISCONNECTED, qr_payload=None)
            logger.info(f"Disconnected session {session_id}")

        await self.bus.publish(StatusEvent(session_id=session_id, status=SessionStatus.DISCONNECTED))

    # ------------------------------------------------------------------
    # 消息与对话
    # ------------------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        conversation_id: str,
        text: str,
        owner_id: str | None = None,
    ) -> list[Message]:
        """提交一条 API 发起的消息，走完整流水线（不经传输连接发送回复）。"""
        await self.get_session(session_id, owner_id)
        return await self.pipeline.simulate_inbound(session_id, conversation_id, text)

    async def send_text(
        self,
        session_id: str,
        recipient: str,
        text: str,
        owner_id: str | None = None,
    ) -> None:
        """
        通过会话的连接直接发送一条文本。

        异常:
            SessionNotConnected: 会话当前没有可用连接
        """
        await self.get_session(session_id, owner_id)
        await self.supervisor.send(session_id, recipient, text)

    async def list_conversations(self, session_id: str, owner_id: str | None = None) -> list[Conversation]:
        await self.get_session(session_id, owner_id)
        return await self.store.list_conversations(session_id)

    async def create_conversation(
        self,
        session_id: str,
        contact_identifier: str | None = None,
        contact_name: str | None = None,
        owner_id: str | None = None,
    ) -> Conversation:
        """
        显式创建对话。

        contact_identifier 为空时创建不绑定联系人的"裸对话"（如直接与助手聊天）；
        同一联系人的对话已存在时抛出 ConflictError。
        """
        await self.get_session(session_id, owner_id)
        return await self.store.create_conversation(
            session_id, contact_identifier=contact_identifier, contact_name=contact_name
        )

    async def get_messages(
        self,
        session_id: str,
        conversation_id: str,
        owner_id: str | None = None,
    ) -> list[Message]:
        await self.get_session(session_id, owner_id)
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or conversation.session_id != session_id:
            raise NotFoundError("conversation", conversation_id)
        return await self.store.list_messages(conversation_id)

    # ------------------------------------------------------------------
    # 进程生命周期
    # ------------------------------------------------------------------

    async def restore(self) -> int:
        """为所有未断开的已持久化会话拉起连接，返回新启动的数量。"""
        started = 0
        for session in await self.store.list_sessions():
            if session.status == SessionStatus.DISCONNECTED:
                continue
            if await self.supervisor.start(session.id):
                started += 1
        logger.info(f"Restored {started} session(s)")
        return started

    async def shutdown(self) -> None:
        """停止所有运行时连接（不修改持久化状态，下次启动时由 restore() 恢复）。"""
        await self.supervisor.stop_all()
        await self.pipeline.cache.close()
