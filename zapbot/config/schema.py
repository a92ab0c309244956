"""
配置数据模型定义 (config/schema.py)
=================================
使用 Pydantic 定义 zapbot 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── transport   - WhatsApp 桥接服务连接参数
├── reconnect   - 非终止性断线后的重连退避策略
├── provider    - LLM 文本生成参数（模型、API Key、温度等）
├── cache       - 回复缓存（进程内 / Redis）
├── pipeline    - 消息流水线（历史窗口、兜底回复、提示词模板）
└── store       - 会话/对话/消息的持久化文件
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from zapbot.cache.reply_cache import DEFAULT_PROMPT_TEMPLATE
from zapbot.pipeline.pipeline import FALLBACK_REPLY


class TransportConfig(BaseModel):
    """WhatsApp 桥接服务配置。每个会话对桥接服务开一条独立的 WebSocket 连接。"""
    bridge_url: str = "ws://localhost:3001"  # 桥接服务的 WebSocket 地址
    bridge_token: str = ""  # 桥接服务认证令牌（可选但推荐设置）
    connect_timeout: float = 10.0  # 建立连接的超时时间（秒）


class ReconnectConfig(BaseModel):
    """
    重连退避配置：delay = min(base_delay * factor ** attempts, max_delay)。

    默认 factor=1.0，即每次固定等待 3 秒。
    """
    base_delay: float = 3.0
    factor: float = 1.0
    max_delay: float = 60.0


class ProviderConfig(BaseModel):
    """LLM 提供商配置，模型名使用 LiteLLM 的 "provider/model" 格式。"""
    model: str = "gemini/gemini-2.0-flash"
    api_key: str = ""
    api_base: str | None = None
    temperature: float = 0.7
    max_tokens: int = 512
    timeout: float = 30.0  # 单次生成请求的超时时间（秒）


class CacheConfig(BaseModel):
    """回复缓存配置。backend 为 redis 时多个进程共享同一份缓存。"""
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout: float = 2.0  # Redis 连接/读写超时（秒），超时按未命中处理
    ttl_seconds: int = 3600  # 缓存有效期，默认一小时
    key_prefix: str = "zapbot:reply:"


class PipelineConfig(BaseModel):
    """消息流水线配置。"""
    history_window: int = 5  # 提示词中保留的最近消息条数
    fallback_reply: str = FALLBACK_REPLY  # 生成失败时的固定回复
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE  # 必须包含 {history} 和 {message}


class StoreConfig(BaseModel):
    """持久化配置。"""
    path: str = "~/.zapbot/store.json"


class Config(BaseSettings):
    """
    zapbot 根配置类。

    除了从 JSON 文件加载外，还支持从环境变量读取配置：
    - 环境变量前缀: ZAPBOT_
    - 嵌套分隔符: __ (双下划线)
    - 示例: ZAPBOT_PROVIDER__MODEL=openai/gpt-4o-mini 可覆盖 provider.model
    """
    transport: TransportConfig = Field(default_factory=TransportConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @property
    def store_path(self) -> Path:
        """获取展开后的存储文件绝对路径（将 ~ 展开为用户主目录）。"""
        return Path(self.store.path).expanduser()

    @property
    def credentials_path(self) -> Path:
        """凭证目录与存储文件放在同一目录下。"""
        return self.store_path.parent / "credentials"

    model_config = ConfigDict(
        env_prefix="ZAPBOT_",
        env_nested_delimiter="__"
    )
