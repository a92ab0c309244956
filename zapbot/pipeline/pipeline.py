"""
消息流水线模块 - 入站消息的入库、自动回复与事件发布。

每条被接受的入站消息都会依次经过：

  1. 查找或创建对话（唯一约束 + 冲突重试，并发安全）
  2. 持久化入站消息（from_self=False）
  3. 推进对话的 last_message_at
  4. 构建提示词，经 ReplyCache 获取 LLM 回复（失败时使用兜底回复）
  5. 持久化回复消息（from_self=True），再次推进 last_message_at
  6. 若消息来自实时传输连接，把回复发回对端（尽力而为，失败只记日志）
  7. 重新读取对话的完整有序消息列表，作为一个 MessageEvent 发布

【失败语义】
- 持久化失败（StoreError）与会话/对话不存在（NotFoundError）中止当前消息并抛给调用方
- 生成失败永远不会抛出：入站消息一定会得到一条回复
- 发送失败不回滚已入库的回复

【并发】
同一对话上的步骤 2-7 由按对话 ID 分配的锁串行执行；
不同对话、不同会话之间并行。
"""

from typing import Awaitable, Callable

from loguru import logger

from zapbot.bus.events import MessageEvent
from zapbot.bus.queue import EventBus
from zapbot.cache.reply_cache import DEFAULT_PROMPT_TEMPLATE, ReplyCache, build_prompt
from zapbot.errors import ConflictError, NotFoundError
from zapbot.providers.base import TextGenerator
from zapbot.store.base import ConversationStore
from zapbot.store.models import Conversation, Message
from zapbot.transport.base import TransportMessage
from zapbot.utils.helpers import KeyedLocks, is_group_or_broadcast, jid_user

FALLBACK_REPLY = "Desculpe, ocorreu um erro ao processar sua solicitação."

# 历史行的角色标签（与默认的葡萄牙语提示词模板保持一致）
USER_LABEL = "Usuário"
ASSISTANT_LABEL = "Assistente"

# 发送回复用的回调：(session_id, recipient, text)
Sender = Callable[[str, str, str], Awaitable[None]]


def accept_transport_message(message: TransportMessage) -> bool:
    """
    判断一条传输层消息是否进入流水线。

    丢弃的消息：没有文本内容的、本账号自己发出的、来自群组/广播/频道的。
    """
    if message.from_me:
        return False
    if not message.text or not message.text.strip():
        return False
    if not message.remote_jid or is_group_or_broadcast(message.remote_jid):
        return False
    return True


class MessagePipeline:
    """
    入站消息处理流水线。

    属性:
        store: 持久化存储
        bus: 事件总线
        generator: 文本生成器
        cache: 回复缓存（默认进程内缓存）
        history_window: 提示词中保留的历史消息条数
        fallback_reply: 生成失败时使用的固定回复
        prompt_template: 提示词模板
        _sender: 发送回复的回调，由 SessionRegistry 绑定到 ConnectionSupervisor.send
        _locks: 按对话 ID 的互斥锁
    """

    def __init__(
        self,
        store: ConversationStore,
        bus: EventBus,
        generator: TextGenerator,
        cache: ReplyCache | None = None,
        history_window: int = 5,
        fallback_reply: str = FALLBACK_REPLY,
        prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
    ):
        self.store = store
        self.bus = bus
        self.generator = generator
        self.cache = cache if cache is not None else ReplyCache()
        self.history_window = history_window
        self.fallback_reply = fallback_reply
        self.prompt_template = prompt_template
        self._sender: Sender | None = None
        self._locks = KeyedLocks()

    def bind_sender(self, sender: Sender | None) -> None:
        self._sender = sender

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    async def handle_transport_message(
        self, session_id: str, message: TransportMessage
    ) -> list[Message] | None:
        """
        处理一条来自实时传输连接的消息。

        过滤后以对端号码作为对话键，回复发往完整的远端标识。

        返回:
            发布出去的完整消息列表；被过滤时返回 None
        """
        if not accept_transport_message(message):
            logger.debug(f"Discarding transport message {message.id} in session {session_id}")
            return None

        return await self.handle_inbound(
            session_id,
            jid_user(message.remote_jid),
            message.text,
            contact_name=message.push_name,
            reply_to=message.remote_jid,
        )

    async def handle_inbound(
        self,
        session_id: str,
        conversation_key: str,
        text: str,
        sender_is_self: bool = False,
        *,
        contact_name: str | None = None,
        reply_to: str | None = None,
    ) -> list[Message] | None:
        """
        处理一条入站消息（对话按联系人标识查找或创建）。

        参数:
            session_id: 会话 ID
            conversation_key: 对端联系人标识（对话的自然键）
            text: 消息文本
            sender_is_self: 是否本方发出（是则丢弃，不回复自己）
            contact_name: 对端昵称，仅在新建对话时写入
            reply_to: 回复的投递地址；为空表示不经传输连接发送

        返回:
            发布出去的完整消息列表；被丢弃时返回 None
        """
        if sender_is_self or not text or not text.strip():
            return None

        conversation = await self._resolve_conversation(session_id, conversation_key, contact_name)
        return await self._process(
            session_id,
            conversation,
            text,
            sender_identifier=conversation_key,
            reply_to=reply_to,
        )

    async def simulate_inbound(self, session_id: str, conversation_id: str, text: str) -> list[Message]:
        """
        处理一条由 API 直接提交的消息（不经过传输连接，也不发送回复）。

        异常:
            ValueError: 文本为空
            NotFoundError: 对话不存在或不属于该会话
        """
        if not text or not text.strip():
            raise ValueError("Message text must not be empty")

        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or conversation.session_id != session_id:
            raise NotFoundError("conversation", conversation_id)

        return await self._process(
            session_id,
            conversation,
            text,
            sender_identifier=conversation.contact_identifier or "user",
            reply_to=None,
        )

    # ------------------------------------------------------------------
    # 内部步骤
    # ------------------------------------------------------------------

    async def _resolve_conversation(
        self, session_id: str, contact_identifier: str, contact_name: str | None
    ) -> Conversation:
        """查找或创建对话；并发创建撞上唯一约束时重新查询。"""
        conversation = await self.store.find_conversation(session_id, contact_identifier)
        if conversation is not None:
            return conversation

        try:
            conversation = await self.store.create_conversation(
                session_id, contact_identifier=contact_identifier, contact_name=contact_name
            )
            logger.info(f"Created conversation {conversation.id} for {contact_identifier} in session {session_id}")
            return conversation
        except ConflictError:
            conversation = await self.store.find_conversation(session_id, contact_identifier)
            if conversation is None:
                raise
            return conversation

    async def _process(
        self,
        session_id: str,
        conversation: Conversation,
        text: str,
        sender_identifier: str,
        reply_to: str | None,
    ) -> list[Message]:
        async with self._locks.lock(conversation.id):
            history = await self.store.list_messages(conversation.id, limit=self.history_window)

            await self.store.add_message(conversation.id, sender_identifier, text, from_self=False)
            await self.store.touch_conversation(conversation.id)

            reply = await self._generate_reply(text, history)

            await self.store.add_message(conversation.id, session_id, reply, from_self=True)
            await self.store.touch_conversation(conversation.id)

            if reply_to is not None:
                await self._deliver(session_id, reply_to, reply)

            messages = await self.store.list_messages(conversation.id)
            await self.bus.publish(MessageEvent(
                session_id=session_id,
                conversation_id=conversation.id,
                messages=tuple(messages),
            ))
            return messages

    async def _generate_reply(self, text: str, history: list[Message]) -> str:
        lines = [f"{ASSISTANT_LABEL if m.from_self else USER_LABEL}: {m.body}" for m in history]
        prompt = build_prompt(text, lines, window=self.history_window, template=self.prompt_template)
        try:
            return await self.cache.get_or_generate(prompt, self.generator.generate)
        except Exception as e:
            logger.warning(f"Reply generation failed, using fallback reply: {e}")
            return self.fallback_reply

    async def _deliver(self, session_id: str, recipient: str, text: str) -> None:
        if self._sender is None:
            logger.warning(f"No sender bound, reply for session {session_id} not delivered")
            return
        try:
            await self._sender(session_id, recipient, text)
        except Exception as e:
            logger.warning(f"Failed to deliver reply to {recipient} in session {session_id}: {e}")
