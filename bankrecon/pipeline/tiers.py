"""
The page tier ladder: text model -> auditor -> vision model -> auditor.

Each tier is a stateless async function. The ladder dispatches on the failure kind:
  - schema violation / timeout at the text tier  -> NEEDS_VISION (no audit)
  - audit mismatch or missing balances           -> NEEDS_VISION
  - vision provider unavailable                  -> next vision provider, else FAILED
  - vision candidate fails the audit             -> FAILED
A failed page never stops the other pages of the job. VERIFIED and FAILED are final for a
page, so a finished page is never sent to a model again.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from bankrecon.config import settings
from bankrecon.engines.base import (
    EngineError,
    ExtractionEngine,
    ExtractionTimeout,
    ProviderUnavailable,
)
from bankrecon.models.enums import PageStatus, TierType
from bankrecon.observability.metrics import audit_failures_total, pages_resolved_total
from bankrecon.pipeline.auditor import audit_candidate, raise_for_audit
from bankrecon.pipeline.errors import JobCancelled, PipelineError
from bankrecon.pipeline.job_state import advance_page
from bankrecon.pipeline.renderer import RenderError
from bankrecon.schemas.contracts import AuditResult, PageCandidate, PageContext, ResolvedPage

logger = structlog.get_logger(__name__)

CancelCheck = Callable[[], Awaitable[bool]]
PageRenderer = Callable[[int], Awaitable[Optional[bytes]]]
PageSink = Callable[[ResolvedPage], Awaitable[None]]


async def checkpoint(job_id: str, cancel_check: Optional[CancelCheck]) -> None:
    """Raise JobCancelled if cancellation was requested for this job."""
    if cancel_check is not None and await cancel_check():
        raise JobCancelled(f"Job {job_id} cancelled")


def _failure_reason(audit: AuditResult) -> str:
    try:
        raise_for_audit(audit)
    except PipelineError as e:
        return e.message
    return ""


async def text_tier(
    engine: ExtractionEngine,
    context: PageContext,
) -> tuple[Optional[PageCandidate], Optional[AuditResult], Optional[str]]:
    """Returns (candidate, audit, error). Audit is None when the engine failed."""
    try:
        candidate = await engine.extract(context)
    except EngineError as e:
        logger.warning(
            "text_tier_failed",
            job_id=context.job_id,
            page=context.page_number,
            error_code=e.error_code,
            error=e.message,
        )
        return None, None, str(e)

    audit = audit_candidate(context.page_number, candidate)
    return candidate, audit, None


def merge_balances(repaired: PageCandidate, prior: Optional[PageCandidate]) -> PageCandidate:
    """Balances the vision model left null fall back to the text tier's."""
    if prior is None:
        return repaired
    updates = {}
    if repaired.page_start_balance is None and prior.page_start_balance is not None:
        updates["page_start_balance"] = prior.page_start_balance
    if repaired.page_end_balance is None and prior.page_end_balance is not None:
        updates["page_end_balance"] = prior.page_end_balance
    return repaired.model_copy(update=updates) if updates else repaired


async def vision_tier(
    engines: list[ExtractionEngine],
    context: PageContext,
) -> tuple[Optional[PageCandidate], Optional[AuditResult], Optional[str]]:
    """Try each vision provider in order; move on only when a provider is unavailable."""
    last_error: Optional[str] = "No vision provider configured"

    for engine in engines:
        try:
            repaired = await engine.extract(context)
        except (ProviderUnavailable, ExtractionTimeout) as e:
            logger.warning(
                "vision_provider_unavailable",
                job_id=context.job_id,
                page=context.page_number,
                engine=engine.engine_name,
                error=e.message,
            )
            last_error = str(e)
            continue
        except EngineError as e:
            logger.warning(
                "vision_tier_failed",
                job_id=context.job_id,
                page=context.page_number,
                engine=engine.engine_name,
                error_code=e.error_code,
            )
            return None, None, str(e)

        repaired = merge_balances(repaired, context.prior_candidate)
        return repaired, audit_candidate(context.page_number, repaired), None

    return None, None, last_error


async def resolve_page(
    job_id: str,
    page_number: int,
    raw_text: str,
    text_engine: ExtractionEngine,
    vision_engines: list[ExtractionEngine],
    render: Optional[PageRenderer] = None,
    cancel_check: Optional[CancelCheck] = None,
) -> ResolvedPage:
    """Run one page through the ladder until it is VERIFIED or FAILED."""
    status = PageStatus.PENDING.value
    log = logger.bind(job_id=job_id, page=page_number)

    # ── Tier 2: text model ──
    await checkpoint(job_id, cancel_check)
    context = PageContext(job_id=job_id, page_number=page_number, raw_text=raw_text)
    candidate, audit, error = await text_tier(text_engine, context)

    if audit is not None and audit.is_verified:
        status = advance_page(status, PageStatus.VERIFIED.value)
        pages_resolved_total.labels(tier=TierType.TEXT_LLM.value, status=status).inc()
        log.info("page_verified", tier=TierType.TEXT_LLM.value)
        return ResolvedPage(
            page_number=page_number,
            status=status,
            tier_used=TierType.TEXT_LLM.value,
            raw_text=raw_text,
            candidate=candidate,
            audit=audit,
        )

    status = advance_page(status, PageStatus.NEEDS_VISION.value)
    if audit is not None:
        audit_failures_total.labels(reason=audit.verdict).inc()
        error = _failure_reason(audit)
    log.info("page_needs_vision", reason=error)

    # ── Tier 3: vision model ──
    await checkpoint(job_id, cancel_check)
    image_png = None
    if render is not None:
        try:
            image_png = await render(page_number)
        except RenderError as e:
            # The vision model still gets the text layer and the prior candidate
            log.warning("page_render_unavailable", error=str(e))

    vision_context = PageContext(
        job_id=job_id,
        page_number=page_number,
        raw_text=raw_text,
        image_png=image_png,
        prior_candidate=candidate,
    )
    repaired, vision_audit, vision_error = await vision_tier(vision_engines, vision_context)

    if vision_audit is not None and vision_audit.is_verified:
        status = advance_page(status, PageStatus.VERIFIED.value)
        pages_resolved_total.labels(tier=TierType.VISION_LLM.value, status=status).inc()
        log.info("page_verified", tier=TierType.VISION_LLM.value)
        return ResolvedPage(
            page_number=page_number,
            status=status,
            tier_used=TierType.VISION_LLM.value,
            raw_text=raw_text,
            candidate=repaired,
            audit=vision_audit,
        )

    if vision_audit is not None:
        audit_failures_total.labels(reason=vision_audit.verdict).inc()
        vision_error = _failure_reason(vision_audit)

    status = advance_page(status, PageStatus.FAILED.value)
    pages_resolved_total.labels(tier=TierType.VISION_LLM.value, status=status).inc()
    log.warning("page_failed", reason=vision_error)

    # Keep whatever was extracted for manual correction
    best = repaired if repaired is not None else candidate
    return ResolvedPage(
        page_number=page_number,
        status=status,
        tier_used=TierType.VISION_LLM.value if repaired is not None else TierType.TEXT_LLM.value,
        raw_text=raw_text,
        candidate=best,
        audit=vision_audit or audit,
        failure_reason=vision_error,
    )


async def resolve_pages(
    job_id: str,
    page_texts: list[str],
    text_engine: ExtractionEngine,
    vision_engines: list[ExtractionEngine],
    render: Optional[PageRenderer] = None,
    cancel_check: Optional[CancelCheck] = None,
    max_concurrency: Optional[int] = None,
    resolved: Optional[dict[int, ResolvedPage]] = None,
    on_resolved: Optional[PageSink] = None,
) -> list[ResolvedPage]:
    """
    Resolve every page concurrently (bounded); results come back in page order.

    Pages already in `resolved` are returned as they are and never reach a model.
    `on_resolved` is awaited once per newly finished page.
    """
    semaphore = asyncio.Semaphore(max_concurrency or settings.MAX_CONCURRENT_PAGES)
    resolved = resolved or {}

    async def _bounded(page_number: int, raw_text: str) -> ResolvedPage:
        if page_number in resolved:
            logger.info("page_reused", job_id=job_id, page=page_number, status=resolved[page_number].status)
            return resolved[page_number]
        async with semaphore:
            page = await resolve_page(
                job_id, page_number, raw_text, text_engine, vision_engines,
                render=render, cancel_check=cancel_check,
            )
        if on_resolved is not None:
            await on_resolved(page)
        return page

    results = await asyncio.gather(
        *(_bounded(i + 1, text) for i, text in enumerate(page_texts))
    )
    return sorted(results, key=lambda p: p.page_number)
