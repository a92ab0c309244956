"""
zapbot - 多租户聊天桥接服务

模块概述：
    本文件是 zapbot 包的入口文件（__init__.py），定义了包的元信息。
    zapbot 在聊天传输层（每个"会话"一条收发通道）与自动应答器之间架桥，
    每条入站消息都会被持久化、交给 LLM 生成回复、再次持久化并推送给订阅者。

    整个服务的核心功能包括：
    - 会话生命周期监督（二维码配对、连接、断线重连）
    - 有序的消息入库与自动回复流水线
    - 基于提示词哈希的回复缓存（带单飞去重）
    - 进程内事件总线（状态、二维码、消息事件的扇出）

    日志默认关闭，由 CLI 或宿主程序通过 logger.enable("zapbot") 打开。
"""

from loguru import logger

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "💬"

# 作为库被引用时保持安静，日志由应用层决定是否开启
logger.disable("zapbot")
