"""
会话管理模块 - 会话生命周期监督与对外操作聚合。

- supervisor.py：ConnectionSupervisor（运行时连接、状态机、重连）
- registry.py：SessionRegistry（对外操作入口）
- credentials.py：CredentialStore（传输凭证文件）
"""

from zapbot.session.credentials import CredentialStore
from zapbot.session.registry import SessionRegistry
from zapbot.session.supervisor import ConnectionSupervisor, ReconnectPolicy

__all__ = ["SessionRegistry", "ConnectionSupervisor", "ReconnectPolicy", "CredentialStore"]
