"""Batch job entry points.

An external scheduler (cron, admin endpoint) triggers jobs by type with an
opaque `parameters` string and records the returned summary. Jobs do not
track their own status; a batch-level failure simply propagates.

Job types:
- mapping: match unprocessed raw items (parameters: category code or "all")
- cleanup: names / duplicates sweeps (parameters: "all", "names", "duplicates")
- consistency: full consistency check (parameters ignored)
- retry: re-run unmappable items (parameters: max attempts, default from settings)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricecatalog.services.cleanup import process_cleanup_job
from pricecatalog.services.consistency import perform_consistency_check
from pricecatalog.services.matching import MatchingConfig, process_unprocessed_items, retry_unmappable_items
from pricecatalog.services.registry_cache import RegistryCache, RegistrySnapshot
from pricecatalog.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")


JOB_MAPPING = "mapping"
JOB_CLEANUP = "cleanup"
JOB_CONSISTENCY = "consistency"
JOB_RETRY = "retry"
JOB_TYPES = (JOB_MAPPING, JOB_CLEANUP, JOB_CONSISTENCY, JOB_RETRY)


@dataclass
class JobResult:
    """Human-readable summary plus structured counts."""

    description: str
    counts: dict[str, Any] = field(default_factory=dict)


async def _current_snapshot(
    cache: RegistryCache, session_factory: async_sessionmaker[AsyncSession]
) -> RegistrySnapshot:
    snapshot = cache.snapshot()
    if snapshot.version == 0:
        # Never loaded in this process (CLI runs, tests).
        snapshot = await cache.refresh_from(session_factory)
    return snapshot


def _category_from_parameters(parameters: str | None) -> str | None:
    p = (parameters or "").strip()
    return None if not p or p.lower() == "all" else p


async def run_mapping_job(
    parameters: str | None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    settings: Settings | None = None,
) -> JobResult:
    settings = settings or get_settings()
    registry = await _current_snapshot(cache, session_factory)
    category = _category_from_parameters(parameters)

    stats = await process_unprocessed_items(
        session_factory=session_factory,
        registry=registry,
        config=MatchingConfig.from_settings(settings),
        category=category,
    )
    description = (
        f"Processing products for category: {category or 'all'}\n"
        f"Results:\n"
        f"- New products mapped: {stats.created_products}\n"
        f"- Matched to existing products: {stats.matched_existing}\n"
        f"- Unmappable: {stats.unmappable}\n"
        f"- Errors: {stats.errors}"
    )
    return JobResult(
        description=description,
        counts={
            "scanned": stats.scanned,
            "createdProducts": stats.created_products,
            "matchedExisting": stats.matched_existing,
            "createdVariants": stats.created_variants,
            "updatedVariants": stats.updated_variants,
            "unmappable": stats.unmappable,
            "unmappableByReason": stats.unmappable_by_reason,
            "errors": stats.errors,
        },
    )


async def run_cleanup_job(
    parameters: str | None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    settings: Settings | None = None,
) -> JobResult:
    settings = settings or get_settings()
    registry = await _current_snapshot(cache, session_factory)
    result = await process_cleanup_job(
        parameters,
        session_factory=session_factory,
        registry=registry,
        threshold=settings.cleanup_merge_threshold,
        batch_size=settings.consistency_batch_size,
    )
    return JobResult(
        description=result.summary(),
        counts={
            "steps": list(result.steps),
            "namesUpdated": result.names_updated,
            "productsMerged": result.products_merged,
            "mergeErrors": result.merge_errors,
        },
    )


async def run_consistency_job(
    parameters: str | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    settings: Settings | None = None,
) -> JobResult:
    settings = settings or get_settings()
    report = await perform_consistency_check(
        session_factory=session_factory,
        cache=cache,
        merge_threshold=settings.merge_threshold,
        smartphone_category=settings.smartphone_category,
        batch_size=settings.consistency_batch_size,
    )
    counts = report.to_dict()
    description = (
        f"Consistency check (registry v{report.registry_version})\n"
        f"Results:\n"
        f"- Brand/model updated: {counts['brandModelUpdated']}\n"
        f"- Products merged: {counts['productsMerged']}\n"
        f"- Categories updated: {counts['categoriesUpdated']}\n"
        f"- Names updated: {counts['namesUpdated']}\n"
        f"- Merge errors: {len(counts['errors'])}"
    )
    return JobResult(description=description, counts=counts)


async def run_retry_job(
    parameters: str | None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    settings: Settings | None = None,
) -> JobResult:
    settings = settings or get_settings()
    registry = await _current_snapshot(cache, session_factory)
    p = (parameters or "").strip()
    try:
        max_attempts = int(p) if p else settings.unmappable_max_attempts
    except ValueError:
        raise ValueError(f"Retry job parameters must be an integer max attempts, got {p!r}") from None

    stats = await retry_unmappable_items(
        session_factory=session_factory,
        registry=registry,
        config=MatchingConfig.from_settings(settings),
        max_attempts=max_attempts,
    )
    description = (
        f"Retrying unmappable items (max attempts {max_attempts})\n"
        f"Results:\n"
        f"- Unmappable before: {stats.before}\n"
        f"- Unmappable after: {stats.after}\n"
        f"- Newly mapped: {stats.mapped}"
    )
    return JobResult(
        description=description,
        counts={
            "before": stats.before,
            "after": stats.after,
            "attempted": stats.attempted,
            "mapped": stats.mapped,
            "stillUnmappable": stats.still_unmappable,
            "errors": stats.errors,
        },
    )


_RUNNERS = {
    JOB_MAPPING: run_mapping_job,
    JOB_CLEANUP: run_cleanup_job,
    JOB_CONSISTENCY: run_consistency_job,
    JOB_RETRY: run_retry_job,
}


async def run_job(
    job_type: str,
    parameters: str | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    settings: Settings | None = None,
) -> JobResult:
    """Dispatch a job by type.

    Raises:
        ValueError: Unknown job type (or bad parameters for that job).
    """
    runner = _RUNNERS.get(job_type)
    if runner is None:
        raise ValueError(f"Unknown job type: {job_type!r} (expected one of {', '.join(JOB_TYPES)})")

    logger.info(f"[jobs] start type={job_type} parameters={parameters!r}")
    result = await runner(parameters, session_factory=session_factory, cache=cache, settings=settings)
    logger.info(f"[jobs] done type={job_type} counts={result.counts}")
    return result
