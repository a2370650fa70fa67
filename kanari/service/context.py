from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from kanari.logging import get_logger
from kanari.service import extraction
from kanari.service.fs import BlobStore

logger = get_logger(__name__)

CONTEXT_HEADER = "[CONTEXT: The following are excerpts from files in your project]"
CONTEXT_FOOTER = "[END OF CONTEXT]"

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_PARAGRAPH_BREAK = re.compile(r"\n\n+")


def tokenize(text: str) -> List[str]:
    """Lowercase, turn anything outside ``[a-z0-9\\s]`` into spaces, split."""
    return _NON_ALNUM.sub(" ", (text or "").lower()).split()


def chunk_text(raw: str, max_chars: int) -> List[str]:
    """Greedily pack paragraphs into chunks of at most ``max_chars``.

    A paragraph is never split; one that alone exceeds the budget is
    truncated at the budget boundary.
    """
    out: List[str] = []
    acc = ""
    for paragraph in _PARAGRAPH_BREAK.split(raw):
        if acc and len(acc + "\n\n" + paragraph) > max_chars:
            out.append(acc)
            acc = paragraph[:max_chars]
        elif acc:
            acc = acc + "\n\n" + paragraph
        else:
            acc = paragraph[:max_chars]
    if acc:
        out.append(acc)
    return out


def score_chunk(query_tokens: set[str], chunk: str) -> int:
    return sum(1 for token in tokenize(chunk) if token in query_tokens)


@dataclass
class ContextChunk:
    file_name: str
    part: int
    text: str
    score: int


def render_context(chunks: Iterable[ContextChunk], max_chars: int) -> str:
    lines = [CONTEXT_HEADER, ""]
    for chunk in chunks:
        lines.append(f"File: {chunk.file_name} (Part {chunk.part})")
        lines.append(chunk.text[:max_chars])
        lines.append("")
    lines.append(CONTEXT_FOOTER)
    lines.append("")
    return "\n".join(lines)


class ContextService:
    """Lexical retrieval over a project's uploaded files."""

    def __init__(
        self,
        store: Any,
        blobs: BlobStore,
        *,
        max_chunks: int = 6,
        max_chars_per_chunk: int = 1200,
        recent_messages: int = 4,
        max_files: int = 50,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.max_chunks = max_chunks
        self.max_chars_per_chunk = max_chars_per_chunk
        self.recent_messages = recent_messages
        self.max_files = max_files

    def _load_text(self, locator: str, mime: str) -> Optional[str]:
        if not extraction.is_extractable(mime):
            return None
        return extraction.extract_text(self.blobs.read_bytes(locator), mime)

    async def build_context_for_chat(
        self, project_id: str, chat_id: str, prompt: str
    ) -> Optional[str]:
        """Render the most relevant file excerpts for ``prompt``, or ``None``.

        Query tokens come from the prompt plus the chat's most recent
        messages. Every chunk of every readable file is a candidate, zero
        scores included, so a project with files always yields context. A
        file that cannot be read or parsed is logged and skipped.
        """
        recent = self.store.list_messages(chat_id, limit=self.recent_messages)
        basis = " ".join([prompt or "", *(m.content for m in recent)])
        query_tokens = set(tokenize(basis))

        files = self.store.list_files(project_id, limit=self.max_files)
        logger.info("context_files_found", project_id=project_id, file_count=len(files))
        if not files:
            return None

        candidates: List[ContextChunk] = []
        for record in files:
            try:
                text = await asyncio.to_thread(self._load_text, record.storage_url, record.mime)
            except Exception as exc:
                logger.warning(
                    "context_file_skipped",
                    file_id=record.id,
                    mime=record.mime,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if text is None:
                continue
            for index, chunk in enumerate(chunk_text(text, self.max_chars_per_chunk), start=1):
                candidates.append(
                    ContextChunk(
                        file_name=record.name,
                        part=index,
                        text=chunk,
                        score=score_chunk(query_tokens, chunk),
                    )
                )

        if not candidates:
            return None

        # sorted() is stable, so equal scores keep file/part order
        top = sorted(candidates, key=lambda c: c.score, reverse=True)[: self.max_chunks]
        context = render_context(top, self.max_chars_per_chunk)
        logger.info(
            "context_built",
            project_id=project_id,
            chunk_count=len(top),
            context_chars=len(context),
        )
        return context
