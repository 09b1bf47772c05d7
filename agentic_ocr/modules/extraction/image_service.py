"""Agentic OCR Image Input Service: base64 / data-URL decoding, PDF receipts via PyMuPDF."""

from __future__ import annotations

import base64
import binascii
import re

import fitz  # PyMuPDF
import httpx
import structlog

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agent_schemas import ReceiptImage
from agentic_ocr.modules.extraction.exceptions import ImageTooLarge, InputInvalid

logger = structlog.get_logger()

SUPPORTED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "application/pdf",
}

# Render resolution for PDF receipts (pixels per inch)
_PDF_RENDER_DPI = 200

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,", re.IGNORECASE)


# ---------------------------------------------------------------------------
# MIME sniffing
# ---------------------------------------------------------------------------

_MAGIC_BYTES: list[tuple[bytes, str]] = [
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF", "application/pdf"),
]


def detect_mime_type(data: bytes) -> str | None:
    """Return the MIME type implied by the file signature, or None."""
    for magic, mime in _MAGIC_BYTES:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def decode_image_data(image_data: str) -> tuple[bytes, str | None]:
    """Decode a base64 payload or a ``data:`` URL.

    Returns:
        (raw bytes, MIME type declared by the data URL or None)
    """
    declared: str | None = None
    payload = image_data.strip()
    match = _DATA_URL_RE.match(payload)
    if match:
        declared = (match.group("mime") or "").lower() or None
        payload = payload[match.end():]

    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise InputInvalid("image_data is not valid base64", cause=e) from e
    if not raw:
        raise InputInvalid("image_data decoded to an empty payload")
    return raw, declared


# ---------------------------------------------------------------------------
# PDF receipts
# ---------------------------------------------------------------------------


def render_pdf_receipt(pdf_bytes: bytes) -> tuple[bytes, str]:
    """Render page 1 of a PDF receipt to PNG and return it with the full text layer."""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise InputInvalid("Unreadable PDF receipt", cause=e) from e

    try:
        if len(doc) == 0:
            raise InputInvalid("PDF receipt has no pages")

        text = "\n".join((page.get_text("text") or "").strip() for page in doc).strip()
        pixmap = doc[0].get_pixmap(dpi=_PDF_RENDER_DPI)
        png_bytes = pixmap.tobytes("png")
        page_count = len(doc)
    finally:
        doc.close()

    logger.info("PDF receipt rendered", pages=page_count, text_chars=len(text))
    return png_bytes, text


# ---------------------------------------------------------------------------
# Request -> ReceiptImage
# ---------------------------------------------------------------------------


def load_receipt_image(
    *,
    image_data: str | None = None,
    image_bytes: bytes | None = None,
    image_url: str | None = None,
    file_type: str | None = None,
    file_name: str = "",
    text: str | None = None,
    max_size_mb: float | None = None,
) -> ReceiptImage:
    """Normalize raw request input into a ReceiptImage.

    Raises:
        InputInvalid: no image was provided, the payload is unreadable, too
            large, or of an unsupported type.
    """
    limit_mb = max_size_mb if max_size_mb is not None else settings.extraction_max_file_size_mb
    declared = (file_type or "").lower() or None

    if image_data:
        image_bytes, data_url_mime = decode_image_data(image_data)
        declared = data_url_mime or declared

    if image_bytes is None:
        if image_url:
            if not image_url.startswith(("http://", "https://")):
                raise InputInvalid("image_url must be an http(s) URL")
            return ReceiptImage(
                url=image_url,
                mime_type=declared or "image/jpeg",
                text=text,
                file_name=file_name or image_url.rsplit("/", 1)[-1],
            )
        raise InputInvalid("No image provided")

    if not image_bytes:
        raise InputInvalid("No image provided")

    size_mb = len(image_bytes) / (1024 * 1024)
    if size_mb > limit_mb:
        raise ImageTooLarge(f"Image too large: {size_mb:.1f} MB (max {limit_mb} MB)")

    mime_type = detect_mime_type(image_bytes) or declared
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise InputInvalid(f"Unsupported image type: {mime_type or 'unknown'}")

    if mime_type == "application/pdf":
        image_bytes, pdf_text = render_pdf_receipt(image_bytes)
        mime_type = "image/png"
        text = text or pdf_text or None

    return ReceiptImage(
        data=image_bytes,
        mime_type=mime_type,
        text=text,
        file_name=file_name,
    )


async def fetch_image_bytes(image: ReceiptImage, *, timeout: float = 30.0) -> tuple[bytes, str]:
    """Return (bytes, mime_type) for an image, downloading URL-only images."""
    if image.data is not None:
        return image.data, image.mime_type
    if not image.url:
        raise InputInvalid("Receipt image has neither bytes nor URL")

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.get(image.url)
        response.raise_for_status()

    data = response.content
    header_mime = response.headers.get("content-type", "").split(";")[0].strip().lower()
    mime_type = detect_mime_type(data) or header_mime or image.mime_type
    if mime_type == "application/pdf":
        data, _ = render_pdf_receipt(data)
        mime_type = "image/png"
    logger.info("Receipt image downloaded", url=image.url, bytes=len(data), mime_type=mime_type)
    return data, mime_type
