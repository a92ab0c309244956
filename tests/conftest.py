import asyncio

import pytest

from zapbot.bus.queue import EventBus
from zapbot.errors import GenerationError, TransportError
from zapbot.pipeline.pipeline import MessagePipeline
from zapbot.providers.base import TextGenerator
from zapbot.session.credentials import CredentialStore
from zapbot.session.registry import SessionRegistry
from zapbot.session.supervisor import ConnectionSupervisor, ReconnectPolicy
from zapbot.store.json_store import JsonStore
from zapbot.transport.base import (
    CloseCause,
    Transport,
    TransportEventKind,
    TransportHandle,
    TransportMessage,
)


class FakeHandle(TransportHandle):
    def __init__(self, session_id, credentials=None):
        super().__init__(session_id)
        self.credentials = credentials
        self.sent = []
        self.closed = False
        self.fail_send = False

    async def send(self, recipient, text):
        if self.fail_send:
            raise TransportError("send failed")
        self.sent.append((recipient, text))

    async def close(self):
        self.closed = True

    async def emit_qr(self, qr):
        await self._emit(TransportEventKind.QR, qr)

    async def emit_open(self):
        await self._emit(TransportEventKind.OPEN)

    async def emit_close(self, code=None, logged_out=False, reason=""):
        await self._emit(TransportEventKind.CLOSE, CloseCause(code=code, reason=reason, logged_out=logged_out))

    async def emit_messages(self, *messages):
        await self._emit(TransportEventKind.MESSAGES, list(messages))

    async def emit_creds(self, creds):
        await self._emit(TransportEventKind.CREDS, creds)


class FakeTransport(Transport):
    def __init__(self):
        self.handles = []
        self.fail_opens = 0

    async def open(self, session_id, credentials):
        if self.fail_opens:
            self.fail_opens -= 1
            raise TransportError("bridge unreachable")
        handle = FakeHandle(session_id, credentials)
        self.handles.append(handle)
        return handle

    def handles_for(self, session_id):
        return [h for h in self.handles if h.session_id == session_id]

    def latest(self, session_id):
        return self.handles_for(session_id)[-1]


class FakeGenerator(TextGenerator):
    def __init__(self, reply="Olá! Como posso ajudar?", fail=False):
        super().__init__()
        self.reply = reply
        self.fail = fail
        self.prompts = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        if self.fail:
            raise GenerationError("provider down")
        return self.reply


def text_message(remote_jid="5511999999999@s.whatsapp.net", text="Oi", msg_id="m1", from_me=False, push_name="Ana"):
    return TransportMessage(id=msg_id, remote_jid=remote_jid, from_me=from_me, text=text, push_name=push_name)


@pytest.fixture
def store():
    return JsonStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []

    async def _collect(event):
        received.append(event)

    bus.subscribe(_collect)
    return received


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def credentials(tmp_path):
    return CredentialStore(tmp_path / "credentials")


@pytest.fixture
def pipeline(store, bus, generator):
    return MessagePipeline(store, bus, generator)


@pytest.fixture
def supervisor(transport, store, bus, credentials, pipeline):
    sup = ConnectionSupervisor(
        transport,
        store,
        bus,
        credentials,
        pipeline=pipeline,
        policy=ReconnectPolicy(base_delay=0.01),
    )
    pipeline.bind_sender(sup.send)
    return sup


@pytest.fixture
def registry(store, supervisor, pipeline, bus, credentials):
    return SessionRegistry(store, supervisor, pipeline, bus, credentials)
