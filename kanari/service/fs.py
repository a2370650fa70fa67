from __future__ import annotations

import uuid
from pathlib import Path

from kanari.logging import get_logger

logger = get_logger(__name__)


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class BlobStore:
    """Upload bytes on the shared filesystem, addressed by relative locators."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, data: bytes) -> str:
        locator = f"uploads/{uuid.uuid4().hex}"
        path = safe_join(self.root, locator)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return locator

    def read_bytes(self, locator: str) -> bytes:
        return safe_join(self.root, locator).read_bytes()

    def read_text(self, locator: str) -> str:
        return self.read_bytes(locator).decode("utf-8")

    def delete(self, locator: str) -> bool:
        """Best-effort removal; a missing or unreadable blob is only logged."""
        try:
            safe_join(self.root, locator).unlink()
        except FileNotFoundError:
            return False
        except (OSError, PathTraversalError) as exc:
            logger.warning("blob_delete_failed", locator=locator, error=str(exc))
            return False
        return True
