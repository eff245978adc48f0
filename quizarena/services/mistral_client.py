"""Thin wrapper around the Mistral Python SDK.

Provides a singleton client and the two calls the content generator
needs: chat completion and document OCR. ``get_client`` returns *None*
when no API key is configured, which puts the generator into demo mode.
Errors are never swallowed here; the circuit breakers count them.
"""

from __future__ import annotations

import base64
import logging
from functools import lru_cache
from typing import Any

from mistralai import Mistral

from quizarena.config import settings

logger = logging.getLogger(__name__)


class EmptyCompletionError(Exception):
    """The model answered with no content."""


@lru_cache(maxsize=1)
def get_client() -> Mistral | None:
    """Return a lazily-initialised Mistral client (or *None* in demo mode)."""
    if not settings.mistral_api_key:
        logger.info("Running in demo mode (no MISTRAL_API_KEY)")
        return None
    return Mistral(api_key=settings.mistral_api_key)


async def chat_completion(
    messages: list[dict[str, str]],
    *,
    model: str | None = None,
    response_format: dict[str, Any] | None = None,
    temperature: float = 0.3,
    max_tokens: int = 4096,
) -> str:
    """Run a chat completion and return the assistant text."""
    client = get_client()
    if client is None:
        raise RuntimeError("Mistral client is not configured")

    kwargs: dict[str, Any] = {
        "model": model or settings.mistral_large_model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if response_format:
        kwargs["response_format"] = response_format

    response = await client.chat.complete_async(**kwargs)
    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise EmptyCompletionError("Mistral returned an empty completion")
    if isinstance(content, list):
        # Structured content chunks; keep the text parts.
        content = "".join(getattr(chunk, "text", "") for chunk in content)
    return content


async def ocr_pdf(pdf_bytes: bytes) -> str:
    """Extract the text of a PDF as markdown, page by page."""
    client = get_client()
    if client is None:
        raise RuntimeError("Mistral client is not configured")

    b64 = base64.standard_b64encode(pdf_bytes).decode()
    response = await client.ocr.process_async(
        model=settings.mistral_ocr_model,
        document={"type": "document_url", "document_url": f"data:application/pdf;base64,{b64}"},
    )
    return "\n\n".join(page.markdown for page in response.pages)
