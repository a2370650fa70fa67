from __future__ import annotations

import io
from typing import Optional

from pypdf import PdfReader

PDF_MIME = "application/pdf"

TEXT_LIKE_MIMES = frozenset(
    {"application/json", "application/xml", "application/javascript"}
)

IMAGE_MIMES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})


def _base_mime(mime: Optional[str]) -> str:
    return (mime or "").split(";", 1)[0].strip().lower()


def is_text_mime(mime: Optional[str]) -> bool:
    base = _base_mime(mime)
    return base.startswith("text/") or base in TEXT_LIKE_MIMES


def is_pdf_mime(mime: Optional[str]) -> bool:
    return _base_mime(mime) == PDF_MIME


def is_extractable(mime: Optional[str]) -> bool:
    return is_text_mime(mime) or is_pdf_mime(mime)


def is_allowed_upload(mime: Optional[str]) -> bool:
    return is_extractable(mime) or _base_mime(mime) in IMAGE_MIMES


def extract_pdf_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    return "\n\n".join(page.extract_text() or "" for page in reader.pages)


def extract_text(data: bytes, mime: Optional[str]) -> Optional[str]:
    """Return the text content of a blob, or ``None`` for unsupported types.

    Undecodable UTF-8 bytes are replaced; PDF parsing errors propagate so the
    caller can skip the file.
    """
    if is_text_mime(mime):
        return data.decode("utf-8", errors="replace")
    if is_pdf_mime(mime):
        return extract_pdf_text(data)
    return None
