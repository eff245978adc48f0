"""Source readers: turn a PDF, web page or video into plain text.

Each remote call goes through its collaborator's circuit breaker:
PDFs through Mistral OCR (``document_reader``), web pages through
Firecrawl (``scraper``), videos through the YouTube Data API
(``video_metadata``) and Supadata (``transcript``).
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from quizarena.config import settings
from quizarena.errors import ContentUnusable, GenerationUnavailable, ValidationFailed
from quizarena.models.session import ContentSource, SourceKind
from quizarena.services.circuit_breaker import BreakerRegistry, breakers, guarded_call
from quizarena.services.mistral_client import get_client, ocr_pdf

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"


def extract_video_id(url: str) -> str | None:
    """Return the YouTube video id of *url*, or *None* when it is not a video link."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    if host.endswith("youtube.com"):
        if parsed.path.startswith("/shorts/"):
            return parsed.path.split("/")[2] or None
        return (parse_qs(parsed.query).get("v") or [None])[0]
    if host == "youtu.be":
        return parsed.path.lstrip("/") or None
    return None


class SourceReader:
    """Resolves a ``ContentSource`` to the text the generator works from."""

    def __init__(self, registry: BreakerRegistry | None = None, http: httpx.AsyncClient | None = None) -> None:
        self.breakers = registry or breakers
        self._http = http

    async def read(self, source: ContentSource) -> str:
        match source.kind:
            case SourceKind.PROMPT:
                text = source.text
            case SourceKind.PDF:
                text = await self.read_pdf(source.data)
            case SourceKind.URL:
                text = await self.scrape(source.url)
            case SourceKind.VIDEO:
                text = await self.transcript(source.url)
            case _:
                raise ValidationFailed(f"Unsupported source kind: {source.kind}")

        text = text.strip()
        if not text:
            raise ContentUnusable("The source did not contain any usable text.")
        return text[: settings.max_source_chars]

    # ── PDF ──────────────────────────────────────────────────────────────

    async def read_pdf(self, data: bytes) -> str:
        if not data.startswith(_PDF_MAGIC):
            raise ValidationFailed("Only PDF files are accepted.")
        if len(data) > settings.max_pdf_bytes:
            raise ValidationFailed(f"File too large (max {settings.max_pdf_bytes // (1024 * 1024)} MB).")
        if get_client() is None:
            raise GenerationUnavailable("Document reading is not configured on this server.")
        return await guarded_call(
            self.breakers["document_reader"],
            "Document reading service temporarily unavailable. Please try again later.",
            ocr_pdf,
            data,
        )

    # ── Web page ─────────────────────────────────────────────────────────

    async def scrape(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationFailed("Please provide a valid http(s) URL.")
        if not settings.firecrawl_api_key:
            raise GenerationUnavailable("Web scraping is not configured on this server.")

        markdown = await guarded_call(
            self.breakers["scraper"],
            "Web scraping service temporarily unavailable. Please try again later.",
            self._firecrawl_scrape,
            url,
        )
        if len(markdown or "") < settings.min_scraped_chars:
            raise ContentUnusable("Could not extract sufficient content from the provided URL.")
        return markdown

    async def _firecrawl_scrape(self, url: str) -> str:
        payload = {
            "url": url,
            "formats": ["markdown"],
            "onlyMainContent": True,
            "removeBase64Images": True,
            "blockAds": True,
        }
        headers = {"Authorization": f"Bearer {settings.firecrawl_api_key}"}
        response = await self._post(settings.firecrawl_api_url, json=payload, headers=headers)
        body = response.json()
        return (body.get("data") or {}).get("markdown") or ""

    # ── Video ────────────────────────────────────────────────────────────

    async def transcript(self, video_url: str) -> str:
        video_id = extract_video_id(video_url)
        if not video_id:
            raise ValidationFailed("Invalid YouTube URL. Please provide a valid YouTube video URL.")
        if not settings.youtube_api_key or not settings.supadata_api_key:
            raise GenerationUnavailable("Video transcripts are not configured on this server.")

        details = await guarded_call(
            self.breakers["video_metadata"],
            "YouTube service temporarily unavailable. Please try again later.",
            self._video_details,
            video_id,
        )
        if details is None:
            raise ContentUnusable("Could not fetch video details. Please check if the video exists.")

        text = await guarded_call(
            self.breakers["transcript"],
            "Transcript service temporarily unavailable. Please try again later.",
            self._fetch_transcript,
            video_id,
        )
        if not text:
            raise ContentUnusable("Could not extract transcript from the video.")
        title = details.get("title", "")
        return f"{title}\n\n{text}" if title else text

    async def _video_details(self, video_id: str) -> dict[str, Any] | None:
        params = {"part": "snippet", "id": video_id, "key": settings.youtube_api_key}
        response = await self._get(settings.youtube_api_url, params=params)
        items = response.json().get("items") or []
        return items[0].get("snippet", {}) if items else None

    async def _fetch_transcript(self, video_id: str) -> str:
        headers = {"x-api-key": settings.supadata_api_key}
        response = await self._get(settings.supadata_api_url, params={"videoId": video_id}, headers=headers)
        content = response.json().get("content") or []
        if isinstance(content, str):
            return content
        return " ".join(chunk.get("text", "") for chunk in content)

    # ── HTTP helpers ─────────────────────────────────────────────────────

    async def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._http is not None:
            response = await self._http.get(url, **kwargs)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, **kwargs)
        response.raise_for_status()
        return response

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._http is not None:
            response = await self._http.post(url, **kwargs)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, **kwargs)
        response.raise_for_status()
        return response
