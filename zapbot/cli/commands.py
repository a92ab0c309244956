"""
CLI 命令模块 - zapbot 的所有命令行命令定义。

使用 Typer 框架定义命令体系：
- onboard：初始化配置文件
- gateway：启动网关服务（恢复会话 + 连接监督 + 自动回复流水线）
- sessions：会话管理（列出、创建、遗忘）
- status：查看系统状态

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（表格、颜色）
"""

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from zapbot import __logo__, __version__

# 创建 Typer 应用实例（CLI 根命令）
app = typer.Typer(
    name="zapbot",
    help=f"{__logo__} zapbot - Chat bridge with automatic replies",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    """版本号回调：当用户传入 --version 参数时，打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} zapbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """zapbot CLI 根命令回调。处理全局选项（如 --version）。"""
    pass


def _setup_logging(verbose: bool) -> None:
    """打开 zapbot 的日志；verbose 时输出 DEBUG 级别。"""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")
    logger.enable("zapbot")


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """
    初始化 zapbot 配置。

    在 ~/.zapbot/ 下创建默认配置文件 config.json，并打印后续操作指引。
    """
    from zapbot.config.loader import get_config_path, save_config
    from zapbot.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} zapbot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your API key to [cyan]~/.zapbot/config.json[/cyan] under provider")
    console.print("  2. Create a session: [cyan]zapbot sessions create <owner>[/cyan]")
    console.print("  3. Start the gateway: [cyan]zapbot gateway[/cyan]")


# ============================================================================
# 组件装配
# ============================================================================


def _make_cache(config):
    """按配置选择回复缓存后端（进程内 / Redis）。"""
    from zapbot.cache.backends import MemoryCacheBackend, RedisCacheBackend
    from zapbot.cache.reply_cache import ReplyCache

    c = config.cache
    if c.backend == "redis":
        backend = RedisCacheBackend(c.redis_url, timeout=c.redis_timeout)
    else:
        backend = MemoryCacheBackend()
    return ReplyCache(backend=backend, ttl_seconds=c.ttl_seconds, key_prefix=c.key_prefix)


def _make_provider(config):
    """根据配置创建 LiteLLM 文本生成器。"""
    from zapbot.providers.litellm_provider import LiteLLMProvider

    p = config.provider
    return LiteLLMProvider(
        api_key=p.api_key or None,
        api_base=p.api_base,
        default_model=p.model,
        max_tokens=p.max_tokens,
        temperature=p.temperature,
        timeout=p.timeout,
    )


def build_registry(config, transport=None, generator=None):
    """
    按配置装配完整的组件图并返回 SessionRegistry。

    参数:
        config: 全局配置对象
        transport: 可选的传输实现（默认 BridgeTransport）
        generator: 可选的文本生成器（默认 LiteLLMProvider）
    """
    from zapbot.bus.queue import EventBus
    from zapbot.pipeline.pipeline import MessagePipeline
    from zapbot.session.credentials import CredentialStore
    from zapbot.session.registry import SessionRegistry
    from zapbot.session.supervisor import ConnectionSupervisor, ReconnectPolicy
    from zapbot.store.json_store import JsonStore
    from zapbot.transport.bridge import BridgeTransport

    if transport is None:
        t = config.transport
        transport = BridgeTransport(t.bridge_url, t.bridge_token, t.connect_timeout)
    if generator is None:
        generator = _make_provider(config)

    bus = EventBus()
    store = JsonStore(config.store_path)
    credentials = CredentialStore(config.credentials_path)
    pipeline = MessagePipeline(
        store,
        bus,
        generator,
        cache=_make_cache(config),
        history_window=config.pipeline.history_window,
        fallback_reply=config.pipeline.fallback_reply,
        prompt_template=config.pipeline.prompt_template,
    )
    r = config.reconnect
    supervisor = ConnectionSupervisor(
        transport,
        store,
        bus,
        credentials,
        pipeline=pipeline,
        policy=ReconnectPolicy(base_delay=r.base_delay, factor=r.factor, max_delay=r.max_delay),
    )
    return SessionRegistry(store, supervisor, pipeline, bus, credentials)


# ============================================================================
# Gateway / Server
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动 zapbot 网关服务。

    1. 加载配置并装配组件（存储、事件总线、缓存、LLM、传输、监督器）
    2. 恢复所有未断开的会话
    3. 把总线事件输出到日志
    4. 运行直到 Ctrl+C，然后停止所有连接
    """
    from zapbot.bus.events import EventKind
    from zapbot.config.loader import load_config
    from zapbot.utils.helpers import truncate_string

    _setup_logging(verbose)
    config = load_config()

    if not config.provider.api_key and not config.provider.api_base:
        console.print("[yellow]Warning: No API key configured, replies will use the fallback text[/yellow]")

    registry = build_registry(config)
    console.print(f"{__logo__} Starting zapbot gateway (bridge: {config.transport.bridge_url})...")

    async def on_event(event) -> None:
        if event.kind is EventKind.MESSAGE:
            preview = truncate_string(event.messages[-1].body, 60) if event.messages else ""
            logger.info(f"[{event.session_id}] conversation {event.conversation_id}: {preview}")
        elif event.kind is EventKind.QR:
            logger.info(f"[{event.session_id}] QR code ready: {event.qr}")
        else:
            logger.info(f"[{event.session_id}] status -> {event.status.value}")

    async def run():
        registry.bus.subscribe(on_event)
        started = await registry.restore()
        console.print(f"[green]✓[/green] Restored {started} session(s)")
        try:
            await asyncio.Event().wait()
        finally:
            await registry.shutdown()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Session Commands
# ============================================================================


sessions_app = typer.Typer(help="Manage sessions")
app.add_typer(sessions_app, name="sessions")


@sessions_app.command("list")
def sessions_list(
    owner: str = typer.Option(None, "--owner", "-o", help="Only show sessions of this owner"),
):
    """以表格形式列出已持久化的会话。"""
    from zapbot.config.loader import load_config
    from zapbot.store.json_store import JsonStore

    config = load_config()
    store = JsonStore(config.store_path)
    sessions = asyncio.run(store.list_sessions(owner))

    if not sessions:
        console.print("No sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Owner")
    table.add_column("Status", style="green")
    table.add_column("Created")

    for s in sessions:
        table.add_row(s.id, s.owner_id, s.status.value, s.created_at.strftime("%Y-%m-%d %H:%M"))

    console.print(table)


@sessions_app.command("create")
def sessions_create(
    owner: str = typer.Argument(..., help="Owner (user) id"),
):
    """创建一个 pending 会话；下次启动 gateway 时会为它建立连接。"""
    from zapbot.config.loader import load_config
    from zapbot.store.json_store import JsonStore

    config = load_config()
    store = JsonStore(config.store_path)
    session = asyncio.run(store.create_session(owner))
    console.print(f"[green]✓[/green] Created session {session.id} for {owner}")


@sessions_app.command("forget")
def sessions_forget(
    session_id: str = typer.Argument(..., help="Session id"),
):
    """删除会话（连同对话、消息和凭证）。"""
    from zapbot.config.loader import load_config
    from zapbot.session.credentials import CredentialStore
    from zapbot.store.json_store import JsonStore

    config = load_config()
    store = JsonStore(config.store_path)
    if not asyncio.run(store.delete_session(session_id)):
        console.print(f"[red]Session {session_id} not found[/red]")
        raise typer.Exit(1)
    CredentialStore(config.credentials_path).wipe(session_id)
    console.print(f"[green]✓[/green] Forgot session {session_id}")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status():
    """
    显示 zapbot 系统状态。

    展示内容：配置文件、存储文件、桥接地址、模型、API Key、缓存后端。
    """
    from zapbot.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()
    store_path = config.store_path

    console.print(f"{__logo__} zapbot Status\n")

    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Store: {store_path} {'[green]✓[/green]' if store_path.exists() else '[dim]not created[/dim]'}")
    console.print(f"Bridge: {config.transport.bridge_url}")
    console.print(f"Model: {config.provider.model}")
    console.print(f"API key: {'[green]✓[/green]' if config.provider.api_key else '[dim]not set[/dim]'}")
    console.print(f"Reply cache: {config.cache.backend} (ttl {config.cache.ttl_seconds}s)")


if __name__ == "__main__":
    app()
