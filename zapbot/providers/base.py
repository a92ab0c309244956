"""
文本生成提供者基类定义模块。

流水线对 LLM 的全部依赖只有一个调用：generate(prompt) -> text。

架构角色：
  入站消息 → MessagePipeline → ReplyCache → TextGenerator.generate() → LLM API

实现约定：
  - 失败（网络错误、超时、空响应）时抛出 GenerationError，
    由流水线捕获并替换为兜底回复，不要在实现内部吞掉异常
"""

from abc import ABC, abstractmethod


class TextGenerator(ABC):
    """
    文本生成器抽象基类。

    属性：
        api_key: API 密钥
        api_base: API 基础 URL（用于自定义端点或代理）
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """
        根据提示词生成一段回复文本。

        参数：
            prompt: 完整提示词（已包含历史窗口和最新用户消息）

        返回：
            去掉首尾空白的回复文本

        异常：
            GenerationError: 调用失败或返回空内容
        """
