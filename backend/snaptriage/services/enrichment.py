"""AI keywords and descriptions for approved photos.

The analyzer speaks the OpenAI chat-completions protocol: the large preview is sent
inline as a data URL and the model answers with
``{"keywords": [...], "description": "..."}``.

Merging is append-only. Keywords the user already has stay exactly as typed, and
candidates are added only when no existing keyword matches case-insensitively. The
merge re-reads the record right before writing, so a user edit that lands while the
analyzer runs is kept.
"""

from __future__ import annotations

import asyncio
import base64
import io
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Sequence
from uuid import UUID

import httpx
from PIL import Image, UnidentifiedImageError
from sqlalchemy import select, update

from snaptriage.core import metrics
from snaptriage.core.config import Settings
from snaptriage.models.image import ImageRecord, ImageStatus
from snaptriage.services.lifecycle import ConcurrentTransitionError
from snaptriage.services.retry import RetryPolicy

if TYPE_CHECKING:
    from snaptriage.core.context import TriageContext

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """Analyze this photograph and provide:
1. A list of 10-15 relevant keywords for cataloging (single words or short phrases, lowercase)
2. A brief description (2-3 sentences) describing the image content, style, and mood

Respond in JSON format exactly like this:
{"keywords": ["keyword1", "keyword2", ...], "description": "Your description here."}"""

_MERGE_ATTEMPTS = 3
_PIL_MIME = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp", "GIF": "image/gif"}


class AnalysisError(Exception):
    pass


class EnrichmentDisabledError(Exception):
    pass


@dataclass(frozen=True)
class AnalysisResult:
    keywords: list[str]
    description: str


def sniff_mime(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return _PIL_MIME.get(str(img.format or "").upper(), "image/jpeg")
    except (UnidentifiedImageError, OSError):
        return "image/jpeg"


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text[3:]
        if text.lower().startswith("json"):
            text = text[4:]
        if text.endswith("```"):
            text = text[:-3]
    return text.strip()


def parse_analysis(payload: dict[str, Any]) -> AnalysisResult:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise AnalysisError("Analysis response has no message content") from exc
    try:
        data = json.loads(_strip_code_fence(str(content or "")))
    except json.JSONDecodeError as exc:
        raise AnalysisError(f"Analysis response is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise AnalysisError("Analysis response is not an object")
    raw_keywords = data.get("keywords") or []
    if not isinstance(raw_keywords, list):
        raise AnalysisError("Analysis keywords must be a list")
    keywords = [str(item).strip() for item in raw_keywords if str(item or "").strip()]
    description = str(data.get("description") or "").strip()
    return AnalysisResult(keywords=keywords, description=description)


class ContentAnalyzer:
    def __init__(
        self,
        *,
        api_key: str,
        api_url: str,
        model: str,
        policy: RetryPolicy,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.policy = policy
        self.timeout = timeout
        self._client = client

    def _request_body(self, image_bytes: bytes) -> dict[str, Any]:
        data_url = f"data:{sniff_mime(image_bytes)};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        return {
            "model": self.model,
            "max_tokens": 500,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
                    ],
                }
            ],
        }

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self._client is not None:
            resp = await self._client.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.api_url, json=body, headers=headers)
        resp.raise_for_status()
        return resp.json()

    async def analyze(self, image_bytes: bytes) -> AnalysisResult:
        body = self._request_body(image_bytes)
        payload = await self.policy.run(lambda: self._post(body), label="analyze_image")
        return parse_analysis(payload)


def build_analyzer(settings: Settings, policy: RetryPolicy) -> ContentAnalyzer | None:
    api_key = (settings.analysis_api_key or "").strip()
    if not api_key:
        return None
    return ContentAnalyzer(
        api_key=api_key,
        api_url=settings.analysis_api_url,
        model=settings.analysis_model,
        policy=policy,
        timeout=settings.analysis_timeout_seconds,
    )


def merge_keywords(existing: Iterable[str], candidates: Iterable[str]) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    for keyword in list(existing) + list(candidates):
        text = str(keyword or "").strip()
        folded = text.casefold()
        if not text or folded in seen:
            continue
        seen.add(folded)
        merged.append(text)
    return merged


async def _apply_analysis(
    ctx: "TriageContext", image_id: UUID, result: AnalysisResult, *, overwrite_description: bool
) -> ImageRecord | None:
    """Merge ``result`` into the current row, retrying on revision races.

    Returns ``None`` when the record no longer exists.
    """
    for _ in range(_MERGE_ATTEMPTS):
        async with ctx.session_factory() as session:
            record = await session.get(ImageRecord, image_id)
            if record is None:
                return None
            keywords = merge_keywords(record.keywords or [], result.keywords)
            values: dict[str, Any] = {}
            if keywords != list(record.keywords or []):
                values["keywords"] = keywords
            if result.description and (overwrite_description or not (record.description or "").strip()):
                values["description"] = result.description
            if not values:
                return record
            outcome = await session.execute(
                update(ImageRecord)
                .where(ImageRecord.id == image_id, ImageRecord.revision == record.revision)
                .values(**values, revision=record.revision + 1)
            )
            await session.commit()
            if outcome.rowcount == 1:
                await session.refresh(record)
                return record
    logger.warning("enrichment_merge_contended", extra={"image_id": str(image_id)})
    raise ConcurrentTransitionError(image_id)


async def _analyze_record(ctx: "TriageContext", record: ImageRecord) -> AnalysisResult:
    preview = await ctx.content_policy.run(
        lambda: ctx.content_store.read_bytes(record.thumb_large_path), label="read_preview"
    )
    return await ctx.analyzer.analyze(preview)


async def enrich_image(ctx: "TriageContext", image_id: UUID) -> bool:
    """Soft enrichment after approval; never raises. Returns whether anything was written."""
    if ctx.analyzer is None:
        return False
    try:
        async with ctx.session_factory() as session:
            record = await session.get(ImageRecord, image_id)
        if record is None or record.status != ImageStatus.approved or (record.description or "").strip():
            return False
        result = await _analyze_record(ctx, record)
        updated = await ctx.metadata_policy.run(
            lambda: _apply_analysis(ctx, image_id, result, overwrite_description=False), label="merge_enrichment"
        )
    except Exception as exc:
        metrics.record_enrichment_failure()
        logger.warning("enrichment_failed", extra={"image_id": str(image_id), "error": str(exc)})
        return False
    logger.info(
        "enrichment_applied",
        extra={"image_id": str(image_id), "candidate_keywords": len(result.keywords)},
    )
    return updated is not None


async def regenerate_enrichment(ctx: "TriageContext", image_id: UUID) -> ImageRecord:
    """Operator-triggered re-analysis; replaces the description and merges keywords.

    Unlike :func:`enrich_image` this raises, so the caller can report the failure.
    """
    if ctx.analyzer is None:
        raise EnrichmentDisabledError("Enrichment is not configured")
    async with ctx.session_factory() as session:
        record = await session.get(ImageRecord, image_id)
    if record is None:
        raise LookupError("Image not found")
    result = await _analyze_record(ctx, record)
    updated = await _apply_analysis(ctx, image_id, result, overwrite_description=True)
    if updated is None:
        raise LookupError("Image not found")
    return updated


async def backfill_missing_descriptions(
    ctx: "TriageContext",
    *,
    batch_size: int | None = None,
    delay_seconds: float | None = None,
    limit: int | None = None,
    statuses: Sequence[ImageStatus] = (ImageStatus.approved, ImageStatus.project_assigned),
) -> dict[str, int]:
    """Analyze reviewed photos that never got a description, in batches."""
    if ctx.analyzer is None:
        return {"processed": 0, "enriched": 0, "failed": 0}
    batch_size = batch_size or ctx.settings.enrichment_backfill_batch_size
    delay = ctx.settings.enrichment_backfill_delay_seconds if delay_seconds is None else delay_seconds
    counts = {"processed": 0, "enriched": 0, "failed": 0}
    attempted: set[UUID] = set()

    while limit is None or counts["processed"] < limit:
        async with ctx.session_factory() as session:
            stmt = (
                select(ImageRecord.id)
                .where(ImageRecord.status.in_(list(statuses)))
                .where((ImageRecord.description.is_(None)) | (ImageRecord.description == ""))
                .order_by(ImageRecord.inserted_at)
            )
            if attempted:
                stmt = stmt.where(ImageRecord.id.not_in(attempted))
            ids = list((await session.execute(stmt.limit(batch_size))).scalars().all())
        if not ids:
            break
        for image_id in ids:
            if limit is not None and counts["processed"] >= limit:
                break
            attempted.add(image_id)
            counts["processed"] += 1
            try:
                await regenerate_enrichment(ctx, image_id)
                counts["enriched"] += 1
            except Exception as exc:
                counts["failed"] += 1
                logger.warning("enrichment_backfill_failed", extra={"image_id": str(image_id), "error": str(exc)})
            if delay > 0:
                await asyncio.sleep(delay)
    logger.info("enrichment_backfill_finished", extra=counts)
    return counts
