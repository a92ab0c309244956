"""
文本生成提供者模块（providers 包）。

- base.py             : TextGenerator 抽象基类（generate(prompt) -> text）
- litellm_provider.py : 基于 LiteLLM 的默认实现

LiteLLMProvider 在这里不直接导入，避免仅使用抽象接口的代码（如测试）加载 litellm。
"""

from zapbot.providers.base import TextGenerator

__all__ = ["TextGenerator"]
