from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

DONE_MARKER = "[DONE]"


class CancelReason:
    TEARDOWN = "teardown"
    TIMEOUT = "timeout"


class CancelToken:
    """One-shot cancellation shared by the stream timer and caller teardown.

    ``cancel`` is idempotent: the first reason wins and later calls are
    no-ops. Tasks bound with ``bind`` are cancelled when the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task) -> None:
        self._tasks.append(task)
        if self.cancelled:
            task.cancel()

    def cancel(self, reason: str = CancelReason.TEARDOWN) -> bool:
        if self.cancelled:
            return False
        self.reason = reason
        self._event.set()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        return True

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class StreamEvent:
    """One item of a reply stream: a fragment, the end marker, or an error."""

    kind: str  # "fragment" | "done" | "error"
    data: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def fragment(cls, text: str) -> "StreamEvent":
        return cls("fragment", text)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls("done")

    @classmethod
    def error(cls, code: str, message: Optional[str] = None) -> "StreamEvent":
        return cls("error", code, message)

    @property
    def terminal(self) -> bool:
        return self.kind in ("done", "error")

    def to_sse(self) -> str:
        if self.kind == "fragment":
            payload = json.dumps({"fragment": self.data})
        elif self.kind == "done":
            payload = DONE_MARKER
        else:
            payload = json.dumps({"error": self.data, "message": self.message})
        return f"event: {self.kind}\ndata: {payload}\n\n"


def _first_choice(payload: Any) -> dict:
    if not isinstance(payload, dict):
        return {}
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _delta_string(choice: dict) -> Optional[str]:
    value = choice.get("delta")
    return value if isinstance(value, str) else None


def _delta_content(choice: dict) -> Optional[str]:
    value = choice.get("delta")
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    return None


def _message_string(choice: dict) -> Optional[str]:
    value = choice.get("message")
    return value if isinstance(value, str) else None


def _message_content(choice: dict) -> Optional[str]:
    value = choice.get("message")
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    return None


def _choice_content(choice: dict) -> Optional[str]:
    value = choice.get("content")
    return value if isinstance(value, str) else None


DeltaRule = Callable[[dict], Optional[str]]

# Tried in order; the first rule that yields a string wins
DELTA_RULES: tuple[DeltaRule, ...] = (
    _delta_string,
    _delta_content,
    _message_string,
    _message_content,
    _choice_content,
)


def extract_delta(payload: Any, rules: Sequence[DeltaRule] = DELTA_RULES) -> str:
    """Pull the text delta out of one decoded provider event ("" if none)."""
    choice = _first_choice(payload)
    if not choice:
        return ""
    for rule in rules:
        value = rule(choice)
        if value is not None:
            return value
    return ""


@dataclass(frozen=True)
class SSELine:
    delta: str = ""
    done: bool = False


def parse_sse_line(line: str) -> Optional[SSELine]:
    """Interpret one line of the provider's event stream.

    Returns ``None`` for lines to ignore: blanks, comments, non-data fields
    and payloads that are not valid JSON.
    """
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    data = stripped[len("data:"):].strip()
    if not data:
        return None
    if data == DONE_MARKER:
        return SSELine(done=True)
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    return SSELine(delta=extract_delta(payload))
