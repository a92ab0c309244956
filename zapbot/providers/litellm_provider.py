"""
LiteLLM 提供者实现模块 - 多 LLM 服务商的统一调用层。

本模块是 TextGenerator 的默认实现，通过 LiteLLM 库用一套代码对接
OpenAI、Anthropic、Gemini、DeepSeek 等服务商，模型名前缀决定路由：
  "gemini/gemini-2.0-flash" → Google AI Studio
  "openai/gpt-4o-mini"      → OpenAI

数据流：
  MessagePipeline → ReplyCache → LiteLLMProvider.generate() → litellm.acompletion() → LLM API

与 Agent 场景不同，这里不需要工具调用：每次只发送一条 user 消息（即完整提示词），
取第一条候选的文本作为回复。超时由 timeout 参数交给 LiteLLM 控制。
"""

from typing import Any

import litellm
from litellm import acompletion

from zapbot.errors import GenerationError
from zapbot.providers.base import TextGenerator


class LiteLLMProvider(TextGenerator):
    """
    基于 LiteLLM 的文本生成器。

    构造参数：
        api_key: API 密钥（为空时由 LiteLLM 从环境变量读取）
        api_base: 自定义 API 基础 URL（代理/网关/本地部署）
        default_model: 默认模型名称
        max_tokens: 回复最大 token 数
        temperature: 采样温度
        timeout: 单次调用超时（秒）
        extra_headers: 额外的 HTTP 请求头
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gemini/gemini-2.0-flash",
        max_tokens: int = 512,
        temperature: float = 0.7,
        timeout: float = 30.0,
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.extra_headers = extra_headers or {}

        # 禁用 LiteLLM 的调试日志输出（默认很啰嗦）
        litellm.suppress_debug_info = True
        # 自动丢弃服务商不支持的参数（避免因多余参数导致请求失败）
        litellm.drop_params = True

    async def generate(self, prompt: str) -> str:
        kwargs: dict[str, Any] = {
            "model": self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            raise GenerationError(f"Error calling LLM: {e}") from e

        return self._parse_response(response)

    def _parse_response(self, response: Any) -> str:
        """取第一条候选的文本；空内容视为失败。"""
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise GenerationError(f"Malformed LLM response: {e}") from e

        text = (content or "").strip()
        if not text:
            raise GenerationError("LLM returned an empty reply")
        return text
