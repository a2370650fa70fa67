from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from kanari.logging import get_logger, sanitize_error_message
from kanari.service.errors import UpstreamError

logger = get_logger(__name__)

FILE_PARSER_PLUGIN = {"id": "file-parser", "pdf": {"engine": "native"}}


class OpenRouterClient:
    """Streaming client for the OpenRouter chat-completions endpoint.

    A fresh ``httpx.AsyncClient`` is opened per stream so each reply owns its
    connection and closing the stream aborts the upstream request. There is
    no read timeout here; the orchestrator enforces a wall-clock budget.
    """

    def __init__(
        self,
        base_url: str,
        *,
        referer: str,
        title: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.referer = referer
        self.title = title
        self._transport = transport
        self._timeout = httpx.Timeout(None, connect=connect_timeout)

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }

    @asynccontextmanager
    async def stream_chat(
        self, payload: dict[str, Any], api_key: str
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open a streaming completion and yield its decoded text lines.

        Raises ``UpstreamError`` when the provider answers with a non-2xx
        status; the message carries the status and response body.
        """
        async with httpx.AsyncClient(
            transport=self._transport, timeout=self._timeout
        ) as client:
            async with client.stream(
                "POST",
                self.completions_url,
                json=payload,
                headers=self.build_headers(api_key),
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.warning(
                        "openrouter_error_response",
                        status_code=response.status_code,
                        model=payload.get("model"),
                    )
                    raise UpstreamError(
                        f"openrouter_error: {response.status_code} {sanitize_error_message(body)}",
                        detail={"upstream_status": response.status_code},
                    )
                yield response.aiter_lines()
