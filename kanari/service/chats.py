from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Sequence

import httpx

from kanari.logging import get_logger, sanitize_error_message
from kanari.service import model_registry
from kanari.service.context import ContextService
from kanari.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
)
from kanari.service.openrouter import FILE_PARSER_PLUGIN, OpenRouterClient
from kanari.service.ownership import OwnershipGuard
from kanari.service.streaming import (
    CancelReason,
    CancelToken,
    StreamEvent,
    parse_sse_line,
)
from kanari.storage.models import Chat, Message

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

# Emitted when neither the caller nor the server has a provider credential
STUB_TOKENS: tuple[str, ...] = (
    "Thinking",
    "…",
    " ",
    "Thanks",
    " ",
    "for",
    " ",
    "your",
    " ",
    "message",
    ".",
)


@dataclass(frozen=True)
class StreamConfig:
    server_api_key: Optional[str] = None
    timeout_ms: int = 60000
    stub_token_delay_ms: int = 60


@dataclass
class ReplyPlan:
    chat_id: str
    user_id: str
    model: str
    paid: bool
    api_key: Optional[str]
    payload: dict


@dataclass
class StreamSession:
    token: CancelToken = field(default_factory=CancelToken)
    queue: "asyncio.Queue[StreamEvent]" = field(default_factory=asyncio.Queue)
    buffer: List[str] = field(default_factory=list)
    got_any_output: bool = False

    @property
    def aborted(self) -> bool:
        return self.token.cancelled

    def emit(self, event: StreamEvent) -> None:
        self.queue.put_nowait(event)

    def push_fragment(self, text: str) -> None:
        self.buffer.append(text)
        self.got_any_output = True
        self.emit(StreamEvent.fragment(text))


def select_credential(
    model_id: str, server_key: Optional[str], caller_key: Optional[str]
) -> Optional[str]:
    """Pick the provider key for a model.

    Paid models only ever use the caller's key. Free models use the caller's
    key when one is supplied and the server's otherwise. ``None`` means no
    credential is available and the stub reply is used.
    """
    caller = (caller_key or "").strip() or None
    if model_registry.is_paid_model(model_id):
        if not caller:
            raise ForbiddenError(
                "paid models require your own OpenRouter key",
                error_code="paid_model_requires_user_key",
            )
        return caller
    return caller or ((server_key or "").strip() or None)


def build_user_turn(content: str, context_block: Optional[str]) -> str:
    if not context_block:
        return content
    return f"{context_block}\n\n---\n\nUser's question: {content}"


def build_upstream_messages(
    system_prompt: str,
    history: Sequence[Message],
    current_message_id: str,
    user_turn: str,
) -> list[dict[str, str]]:
    """System prompt, then the history with the current turn's text replaced.

    The stored copy of the current user message is swapped for the
    context-augmented turn so the provider never sees the question twice.
    """
    messages = [{"role": "system", "content": system_prompt}]
    replaced = False
    for message in history:
        if message.id == current_message_id:
            messages.append({"role": "user", "content": user_turn})
            replaced = True
        else:
            messages.append({"role": message.role, "content": message.content})
    if not replaced:
        messages.append({"role": "user", "content": user_turn})
    return messages


class ChatService:
    """Chats, messages and the streaming reply pipeline."""

    def __init__(
        self,
        store: Any,
        context: ContextService,
        provider: OpenRouterClient,
        config: StreamConfig,
        *,
        guard: Optional[OwnershipGuard] = None,
    ) -> None:
        self.store = store
        self.context = context
        self.provider = provider
        self.config = config
        self.guard = guard or OwnershipGuard(store)
        self._active_streams: set[str] = set()

    # chats
    def create_chat(self, user_id: str, project_id: str, title: Optional[str] = None) -> Chat:
        project = self.guard.assert_project_owned(user_id, project_id)
        chat = self.store.create_chat(user_id, project.id, title=title)
        logger.info("chat_created", chat_id=chat.id, project_id=project.id)
        return chat

    def list_chats(self, user_id: str, project_id: str) -> List[Chat]:
        project = self.guard.assert_project_owned(user_id, project_id)
        return self.store.list_chats(user_id, project.id)

    def get_chat(self, user_id: str, chat_id: str) -> Chat:
        return self.guard.assert_chat_owned(user_id, chat_id)

    def update_chat(self, user_id: str, chat_id: str, title: Optional[str]) -> Chat:
        self.guard.assert_chat_owned(user_id, chat_id)
        chat = self.store.update_chat(chat_id, title=title)
        if not chat:
            raise NotFoundError("chat not found", error_code="chat_not_found")
        return chat

    def delete_chat(self, user_id: str, chat_id: str) -> None:
        self.guard.assert_chat_owned(user_id, chat_id)
        self.store.delete_chat(chat_id)
        logger.info("chat_deleted", chat_id=chat_id)

    # messages
    def list_messages(self, user_id: str, chat_id: str) -> List[Message]:
        self.guard.assert_chat_owned(user_id, chat_id)
        return self.store.list_messages(chat_id)

    def create_user_message(self, user_id: str, chat_id: str, content: str) -> Message:
        _require_content(content)
        self.guard.assert_chat_owned(user_id, chat_id)
        return self.store.append_message(chat_id, "user", content, user_id=user_id)

    async def preview_context(self, user_id: str, chat_id: str, prompt: str) -> Optional[str]:
        chat = self.guard.assert_chat_owned(user_id, chat_id)
        return await self.context.build_context_for_chat(chat.project_id, chat.id, prompt)

    # streaming
    def is_streaming(self, chat_id: str) -> bool:
        return chat_id in self._active_streams

    async def stream_reply(
        self,
        user_id: str,
        chat_id: str,
        content: str,
        credential: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Persist a user turn and stream the assistant's reply.

        Yields fragments in arrival order followed by exactly one terminal
        event: ``done`` on success or ``error`` when the upstream fails or
        times out. Ownership, model and credential problems are raised as
        ``ServiceError`` before anything is yielded. Closing the generator
        early cancels the upstream request and nothing further is stored.
        Only one stream per chat may run at a time.
        """
        _require_content(content)
        chat = self.guard.assert_chat_owned(user_id, chat_id)
        if chat.id in self._active_streams:
            raise ConflictError(
                "a reply is already streaming for this chat",
                error_code="chat_stream_in_progress",
            )
        self._active_streams.add(chat.id)
        session = StreamSession()
        producer: Optional[asyncio.Task] = None
        try:
            plan = await self._prepare(user_id, chat, content, credential)
            producer = asyncio.create_task(self._produce(plan, session))
            session.token.bind(producer)
            while True:
                event = await session.queue.get()
                yield event
                if event.terminal:
                    break
        finally:
            self._active_streams.discard(chat.id)
            if producer is not None:
                if not producer.done():
                    session.token.cancel(CancelReason.TEARDOWN)
                    logger.info(
                        "chat_stream_cancelled",
                        chat_id=chat.id,
                        fragments=len(session.buffer),
                    )
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    async def _prepare(
        self, user_id: str, chat: Chat, content: str, credential: Optional[str]
    ) -> ReplyPlan:
        user_message = self.store.append_message(chat.id, "user", content, user_id=user_id)

        project = self.store.get_project(chat.project_id, user_id=user_id)
        if not project:
            raise NotFoundError("project not found", error_code="project_not_found")
        system_prompt = project.system_prompt or DEFAULT_SYSTEM_PROMPT

        context_block = await self.context.build_context_for_chat(project.id, chat.id, content)
        user_turn = build_user_turn(content, context_block)
        messages = build_upstream_messages(
            system_prompt,
            self.store.list_messages(chat.id),
            user_message.id,
            user_turn,
        )

        model = project.model or model_registry.default_model_id()
        if not model_registry.is_known_model(model):
            raise BadRequestError(
                f"unknown model '{model}'", error_code="invalid_model"
            )
        paid = model_registry.is_paid_model(model)
        api_key = select_credential(model, self.config.server_api_key, credential)

        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
        if paid:
            payload["plugins"] = [dict(FILE_PARSER_PLUGIN)]
        return ReplyPlan(
            chat_id=chat.id,
            user_id=user_id,
            model=model,
            paid=paid,
            api_key=api_key,
            payload=payload,
        )

    async def _produce(self, plan: ReplyPlan, session: StreamSession) -> None:
        timer: Optional[asyncio.TimerHandle] = None
        try:
            if plan.api_key is None:
                logger.info("chat_stream_stub", chat_id=plan.chat_id, model=plan.model)
                await self._emit_stub(session)
            else:
                timer = asyncio.get_running_loop().call_later(
                    self.config.timeout_ms / 1000,
                    session.token.cancel,
                    CancelReason.TIMEOUT,
                )
                await self._relay_upstream(plan, session)
            self._finalize(plan, session)
        except asyncio.CancelledError:
            if session.token.reason != CancelReason.TIMEOUT:
                raise
            logger.warning(
                "chat_stream_timeout",
                chat_id=plan.chat_id,
                timeout_ms=self.config.timeout_ms,
                fragments=len(session.buffer),
            )
            session.emit(
                StreamEvent.error("openrouter_stream_timeout", "upstream stream timed out")
            )
        except ServiceError as exc:
            logger.warning(
                "chat_stream_failed",
                chat_id=plan.chat_id,
                error_code=exc.error_code,
                status_code=exc.status_code,
            )
            session.emit(StreamEvent.error(exc.error_code, exc.message))
        except httpx.HTTPError as exc:
            logger.warning(
                "chat_stream_transport_error",
                chat_id=plan.chat_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            session.emit(
                StreamEvent.error("openrouter_error", sanitize_error_message(str(exc)))
            )
        except Exception as exc:
            logger.exception(
                "chat_stream_unexpected_error",
                chat_id=plan.chat_id,
                error_type=type(exc).__name__,
            )
            session.emit(StreamEvent.error("server_error", "internal server error"))
        finally:
            if timer is not None:
                timer.cancel()

    async def _emit_stub(self, session: StreamSession) -> None:
        delay = max(0, self.config.stub_token_delay_ms) / 1000
        for token in STUB_TOKENS:
            if session.aborted:
                return
            session.push_fragment(token)
            if delay:
                await asyncio.sleep(delay)

    async def _relay_upstream(self, plan: ReplyPlan, session: StreamSession) -> None:
        logger.info(
            "chat_stream_upstream_request",
            chat_id=plan.chat_id,
            model=plan.model,
            paid=plan.paid,
            message_count=len(plan.payload["messages"]),
        )
        async with self.provider.stream_chat(plan.payload, plan.api_key) as lines:
            async for line in lines:
                if session.aborted:
                    return
                parsed = parse_sse_line(line)
                if parsed is None:
                    continue
                if parsed.done:
                    break
                if parsed.delta:
                    session.push_fragment(parsed.delta)

    def _finalize(self, plan: ReplyPlan, session: StreamSession) -> None:
        if session.aborted:
            return
        full_text = "".join(session.buffer)
        if full_text:
            self.store.append_message(plan.chat_id, "assistant", full_text)
        logger.info(
            "chat_stream_completed",
            chat_id=plan.chat_id,
            model=plan.model,
            reply_chars=len(full_text),
        )
        session.emit(StreamEvent.done())


def _require_content(content: Optional[str]) -> None:
    if not content or not content.strip():
        raise BadRequestError("content is required", error_code="content_required")
