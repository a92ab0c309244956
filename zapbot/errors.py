"""
异常类型定义模块 - zapbot 的错误分类体系。

所有库内异常都继承自 ZapbotError，调用方可以按需捕获具体子类：

- NotFoundError：会话或对话不存在（或不属于调用者）
- ConflictError：唯一约束冲突（并发创建同一联系人的对话）
- SessionNotConnected：会话没有处于连接状态的运行时连接
- StoreError：持久化失败，中止当前流水线步骤并上抛给直接调用者
- GenerationError：文本生成失败，由流水线就地兜底，不会暴露给调用者
- TransportError：传输层连接或发送失败

终止性断线（登出 / 401）与临时断线不使用异常表示，
而是由 transport.base.CloseCause.is_terminal 区分。
"""


class ZapbotError(Exception):
    """zapbot 所有异常的基类。"""


class NotFoundError(ZapbotError):
    """请求的会话或对话不存在。"""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class ConflictError(ZapbotError):
    """违反唯一约束（如同一会话下重复创建同一联系人的对话）。"""


class SessionNotConnected(ZapbotError):
    """会话当前没有可用的传输连接。"""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is not connected")
        self.session_id = session_id


class StoreError(ZapbotError):
    """持久化层读写失败。"""


class GenerationError(ZapbotError):
    """文本生成调用失败（网络错误、超时、空响应等）。"""


class TransportError(ZapbotError):
    """传输层连接或发送失败。"""
