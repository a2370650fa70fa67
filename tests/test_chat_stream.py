import asyncio
import json
from pathlib import Path

import httpx
import pytest

from kanari.service.chats import STUB_TOKENS, ChatService, StreamConfig, select_credential
from kanari.service.context import ContextService
from kanari.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from kanari.service.fs import BlobStore
from kanari.service.openrouter import OpenRouterClient
from kanari.storage.memory import MemoryStore

FREE_MODEL = "deepseek/deepseek-chat-v3.1:free"
PAID_MODEL = "openai/gpt-5-nano"


def _sse(*deltas: str, done: bool = True) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": d}}]}) + "\n\n"
        for d in deltas
    ]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class Upstream:
    """Records provider requests and answers with a canned streaming response."""

    def __init__(self, responder=None):
        self.requests: list[httpx.Request] = []
        self.responder = responder or (lambda request: httpx.Response(200, content=_sse("Hi", " there")))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _hanging_response(request: httpx.Request) -> httpx.Response:
    async def body():
        yield _sse("partial", done=False)
        await asyncio.Event().wait()

    return httpx.Response(200, content=body())


def _build(tmp_path: Path, upstream: Upstream, *, server_key=None, timeout_ms=60000, model=FREE_MODEL):
    store = MemoryStore(fs_root=str(tmp_path))
    blobs = BlobStore(tmp_path)
    provider = OpenRouterClient(
        "https://openrouter.test/api/v1",
        referer="http://localhost:3000",
        title="Kanari",
        transport=httpx.MockTransport(upstream),
    )
    service = ChatService(
        store,
        ContextService(store, blobs),
        provider,
        StreamConfig(server_api_key=server_key, timeout_ms=timeout_ms, stub_token_delay_ms=0),
    )
    user = store.create_user("owner@example.com")
    project = store.create_project(user.id, "Research", model=model)
    chat = store.create_chat(user.id, project.id)
    return service, store, user, chat


async def _collect(events):
    return [event async for event in events]


async def test_upstream_reply_is_streamed_and_persisted(tmp_path: Path):
    upstream = Upstream()
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    events = await _collect(service.stream_reply(user.id, chat.id, "hello"))

    assert [e.kind for e in events] == ["fragment", "fragment", "done"]
    assert "".join(e.data for e in events if e.kind == "fragment") == "Hi there"
    messages = store.list_messages(chat.id)
    assert [(m.role, m.content) for m in messages] == [("user", "hello"), ("assistant", "Hi there")]
    assert messages[1].user_id is None

    request = upstream.requests[0]
    assert request.url == "https://openrouter.test/api/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-server"
    assert request.headers["X-Title"] == "Kanari"
    assert request.headers["HTTP-Referer"] == "http://localhost:3000"
    payload = upstream.payloads[0]
    assert payload["model"] == FREE_MODEL
    assert payload["stream"] is True
    assert "plugins" not in payload
    assert payload["messages"][0] == {"role": "system", "content": "You are a helpful assistant."}


async def test_current_prompt_is_sent_once_with_context(tmp_path: Path):
    upstream = Upstream()
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")
    locator = BlobStore(tmp_path).save(b"hello world notes")
    store.create_file(
        chat.project_id, user.id, name="notes.txt", mime="text/plain", size=17, storage_url=locator
    )

    await _collect(service.stream_reply(user.id, chat.id, "hello"))

    sent = upstream.payloads[0]["messages"]
    user_turns = [m for m in sent if m["role"] == "user"]
    assert len(user_turns) == 1
    assert "User's question: hello" in user_turns[0]["content"]
    assert "File: notes.txt (Part 1)" in user_turns[0]["content"]
    assert not any(m["content"] == "hello" for m in sent)


async def test_history_is_replayed_in_order(tmp_path: Path):
    upstream = Upstream()
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")
    store.append_message(chat.id, "user", "first", user_id=user.id)
    store.append_message(chat.id, "assistant", "reply one")

    await _collect(service.stream_reply(user.id, chat.id, "second"))

    sent = upstream.payloads[0]["messages"]
    assert [(m["role"], m["content"]) for m in sent[1:]] == [
        ("user", "first"),
        ("assistant", "reply one"),
        ("user", "second"),
    ]


async def test_stub_reply_without_any_credential(tmp_path: Path):
    upstream = Upstream()
    service, store, user, chat = _build(tmp_path, upstream)

    events = await _collect(service.stream_reply(user.id, chat.id, "hello"))

    assert [e.data for e in events if e.kind == "fragment"] == list(STUB_TOKENS)
    assert events[-1].kind == "done"
    assert upstream.requests == []
    assistant = [m for m in store.list_messages(chat.id) if m.role == "assistant"]
    assert [m.content for m in assistant] == ["".join(STUB_TOKENS)]


async def test_paid_model_requires_caller_key(tmp_path: Path):
    upstream = Upstream()
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server", model=PAID_MODEL)

    with pytest.raises(ForbiddenError) as excinfo:
        await service.stream_reply(user.id, chat.id, "hello").__anext__()

    assert excinfo.value.error_code == "paid_model_requires_user_key"
    assert excinfo.value.status_code == 403
    assert upstream.requests == []
    assert [m.role for m in store.list_messages(chat.id)] == ["user"]
    assert not service.is_streaming(chat.id)


async def test_paid_model_with_caller_key_adds_file_parser(tmp_path: Path):
    upstream = Upstream()
    service, _, user, chat = _build(tmp_path, upstream, model=PAID_MODEL)

    await _collect(service.stream_reply(user.id, chat.id, "hello", credential="sk-caller"))

    assert upstream.requests[0].headers["Authorization"] == "Bearer sk-caller"
    assert upstream.payloads[0]["plugins"] == [{"id": "file-parser", "pdf": {"engine": "native"}}]


async def test_caller_key_overrides_server_key_for_free_models(tmp_path: Path):
    upstream = Upstream()
    service, _, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    await _collect(service.stream_reply(user.id, chat.id, "hello", credential="sk-caller"))

    assert upstream.requests[0].headers["Authorization"] == "Bearer sk-caller"


def test_select_credential_policy():
    assert select_credential(FREE_MODEL, "sk-server", None) == "sk-server"
    assert select_credential(FREE_MODEL, "sk-server", "  ") == "sk-server"
    assert select_credential(FREE_MODEL, None, None) is None
    assert select_credential(PAID_MODEL, None, "sk-caller") == "sk-caller"
    with pytest.raises(ForbiddenError):
        select_credential(PAID_MODEL, "sk-server", None)


async def test_unknown_project_model_is_rejected(tmp_path: Path):
    upstream = Upstream()
    service, _, user, chat = _build(tmp_path, upstream, server_key="sk-server", model="vendor/retired")

    with pytest.raises(BadRequestError) as excinfo:
        await service.stream_reply(user.id, chat.id, "hello").__anext__()

    assert excinfo.value.error_code == "invalid_model"
    assert upstream.requests == []


async def test_other_users_chat_is_not_found(tmp_path: Path):
    upstream = Upstream()
    service, store, _, chat = _build(tmp_path, upstream)
    intruder = store.create_user("intruder@example.com")

    with pytest.raises(NotFoundError) as excinfo:
        await service.stream_reply(intruder.id, chat.id, "hello").__anext__()

    assert excinfo.value.error_code == "chat_not_found"
    assert store.list_messages(chat.id) == []


async def test_blank_content_is_rejected(tmp_path: Path):
    service, store, user, chat = _build(tmp_path, Upstream())

    with pytest.raises(BadRequestError) as excinfo:
        await service.stream_reply(user.id, chat.id, "   ").__anext__()

    assert excinfo.value.error_code == "content_required"
    assert store.list_messages(chat.id) == []


async def test_non_success_status_yields_error_event(tmp_path: Path):
    upstream = Upstream(lambda request: httpx.Response(429, text="slow down"))
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    events = await _collect(service.stream_reply(user.id, chat.id, "hello"))

    assert len(events) == 1
    assert events[0].kind == "error"
    assert events[0].data == "openrouter_error"
    assert "429" in events[0].message
    assert "slow down" in events[0].message
    assert [m.role for m in store.list_messages(chat.id)] == ["user"]


async def test_malformed_lines_are_skipped(tmp_path: Path):
    body = (
        b": keep-alive\n\n"
        b"data: {not json}\n\n"
        b'data: {"choices":[{"delta":"A"}]}\n\n'
        b'data: {"choices":[{"message":{"content":"B"}}]}\n\n'
        b'data: {"choices":[{}]}\n\n'
        b"data: [DONE]\n\n"
        b'data: {"choices":[{"delta":{"content":"late"}}]}\n\n'
    )
    upstream = Upstream(lambda request: httpx.Response(200, content=body))
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    events = await _collect(service.stream_reply(user.id, chat.id, "hello"))

    assert [e.data for e in events if e.kind == "fragment"] == ["A", "B"]
    assert [e.kind for e in events].count("done") == 1
    assert store.list_messages(chat.id)[-1].content == "AB"


async def test_empty_reply_is_not_persisted(tmp_path: Path):
    upstream = Upstream(lambda request: httpx.Response(200, content=b"data: [DONE]\n\n"))
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    events = await _collect(service.stream_reply(user.id, chat.id, "hello"))

    assert [e.kind for e in events] == ["done"]
    assert [m.role for m in store.list_messages(chat.id)] == ["user"]


async def test_teardown_discards_partial_output(tmp_path: Path):
    upstream = Upstream(_hanging_response)
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    events = service.stream_reply(user.id, chat.id, "hello")
    first = await events.__anext__()
    assert first.kind == "fragment" and first.data == "partial"
    await events.aclose()

    assert [m.role for m in store.list_messages(chat.id)] == ["user"]
    assert not service.is_streaming(chat.id)


async def test_timeout_surfaces_terminal_error(tmp_path: Path):
    upstream = Upstream(_hanging_response)
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server", timeout_ms=50)

    events = await asyncio.wait_for(_collect(service.stream_reply(user.id, chat.id, "hello")), 5)

    assert [e.kind for e in events] == ["fragment", "error"]
    assert events[-1].data == "openrouter_stream_timeout"
    assert [m.role for m in store.list_messages(chat.id)] == ["user"]


async def test_concurrent_stream_on_same_chat_is_rejected(tmp_path: Path):
    upstream = Upstream(_hanging_response)
    service, store, user, chat = _build(tmp_path, upstream, server_key="sk-server")

    first = service.stream_reply(user.id, chat.id, "hello")
    await first.__anext__()
    assert service.is_streaming(chat.id)

    with pytest.raises(ConflictError) as excinfo:
        await service.stream_reply(user.id, chat.id, "again").__anext__()
    assert excinfo.value.error_code == "chat_stream_in_progress"
    assert [m.content for m in store.list_messages(chat.id)] == ["hello"]

    await first.aclose()
    assert not service.is_streaming(chat.id)
