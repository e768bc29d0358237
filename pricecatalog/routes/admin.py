"""Admin endpoints for batch jobs, the registry and remediation.

These endpoints are intended for operators and the job scheduler.
In production, consider adding authentication (API key or admin token).
"""

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from pricecatalog.models import RegistryType
from pricecatalog.services.consistency import find_potential_duplicates
from pricecatalog.services.jobs import JOB_TYPES, run_job
from pricecatalog.services.registry_admin import (
    RegistryEntryNotFound,
    RegistryError,
    add_potential_brands_to_registry,
    bulk_import,
    change_entry_type,
    create_entry,
    delete_entry,
    entry_to_dict,
    export_entries,
    list_entries,
    parse_registry_type,
    update_entry,
)
from pricecatalog.services.registry_cache import get_registry_cache
from pricecatalog.services.unmappable import (
    analyze_potential_missing_brands,
    get_unmappable_item_details,
    get_unmappable_stats,
)
from pricecatalog.settings import get_settings
from pricecatalog.stores.postgres import get_session_factory, session_scope
from pricecatalog.stores.redis import acquire_lock, job_lock_key, release_lock

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _registry_http_error(e: RegistryError) -> HTTPException:
    if isinstance(e, RegistryEntryNotFound):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ============================================================
# Batch jobs
# ============================================================


class JobRequest(BaseModel):
    """Request body for job endpoints."""

    parameters: str | None = None  # category, "all", "names,duplicates", max attempts


class JobResponse(BaseModel):
    """Response from job endpoints."""

    success: bool
    run_id: str
    job_type: str
    description: str
    counts: dict


@router.post("/jobs/{job_type}", response_model=JobResponse)
async def trigger_job(job_type: str, request: JobRequest | None = None) -> JobResponse:
    """Run a batch job synchronously (one run per job type at a time).

    Args:
        job_type: mapping, cleanup, consistency or retry.
        request: Optional parameters string.

    Returns:
        Job summary and counts.
    """
    if job_type not in JOB_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported job type: {job_type}. Supported: {list(JOB_TYPES)}",
        )

    settings = get_settings()
    parameters = request.parameters if request else None
    run_id = str(uuid4())
    lock_key = job_lock_key(job_type)

    if not await acquire_lock(lock_key, settings.job_lock_ttl_seconds):
        raise HTTPException(status_code=409, detail=f"Job already running: {job_type}")

    logger.info(f"[jobs] start run_id={run_id} type={job_type} parameters={parameters!r}")
    try:
        result = await run_job(
            job_type,
            parameters,
            session_factory=get_session_factory(),
            cache=get_registry_cache(),
            settings=settings,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"[jobs] failed run_id={run_id} type={job_type}")
        raise HTTPException(status_code=500, detail=f"Job failed: {str(e)}")
    finally:
        await release_lock(lock_key)

    return JobResponse(
        success=True,
        run_id=run_id,
        job_type=job_type,
        description=result.description,
        counts=result.counts,
    )


# ============================================================
# Registry
# ============================================================


class RegistryEntryRequest(BaseModel):
    """Request body for creating a registry entry."""

    type: str  # "brand", "not_brand", "common_word", "color", "storage_pattern"
    key: str
    value: str | None = None
    description: str | None = None
    enabled: bool = True


class RegistryEntryPatch(BaseModel):
    """Request body for updating a registry entry."""

    key: str | None = None
    value: str | None = None
    description: str | None = None
    enabled: bool | None = None
    type: str | None = None


class RegistryImportRequest(BaseModel):
    """Request body for bulk import (the export format)."""

    entries: list[dict[str, Any]] = Field(default_factory=list)


@router.get("/registry")
async def list_registry(
    type: str | None = Query(default=None),
    enabled: bool | None = Query(default=None),
) -> dict:
    """List registry entries, optionally filtered by type."""
    try:
        entry_type = parse_registry_type(type) if type else None
    except RegistryError as e:
        raise _registry_http_error(e)

    async with session_scope(get_session_factory()) as session:
        entries = await list_entries(session, entry_type=entry_type, enabled=enabled)
        items = [entry_to_dict(e) for e in entries]

    return {
        "count": len(items),
        "snapshotVersion": get_registry_cache().snapshot().version,
        "entries": items,
    }


@router.post("/registry")
async def create_registry_entry(request: RegistryEntryRequest) -> dict:
    """Create a registry entry and refresh the cache."""
    try:
        entry = await create_entry(
            session_factory=get_session_factory(),
            cache=get_registry_cache(),
            entry_type=request.type,
            key=request.key,
            value=request.value,
            description=request.description,
            enabled=request.enabled,
        )
    except RegistryError as e:
        raise _registry_http_error(e)
    return {"success": True, "entry": entry}


@router.patch("/registry/{entry_id}")
async def patch_registry_entry(entry_id: int, request: RegistryEntryPatch) -> dict:
    """Update fields of an entry; a type change runs the brand cascade when needed."""
    session_factory = get_session_factory()
    cache = get_registry_cache()
    try:
        out: dict[str, Any] = {"success": True, "removedProducts": None}
        if request.type is not None:
            changed = await change_entry_type(
                session_factory=session_factory,
                cache=cache,
                entry_id=entry_id,
                new_type=request.type,
            )
            out["removedProducts"] = changed["removedProducts"]
        out["entry"] = await update_entry(
            session_factory=session_factory,
            cache=cache,
            entry_id=entry_id,
            key=request.key,
            value=request.value,
            description=request.description,
            enabled=request.enabled,
        )
    except RegistryError as e:
        raise _registry_http_error(e)
    return out


@router.delete("/registry/{entry_id}")
async def delete_registry_entry(entry_id: int) -> dict:
    """Delete an entry (a Brand also takes its products with it)."""
    try:
        result = await delete_entry(
            session_factory=get_session_factory(),
            cache=get_registry_cache(),
            entry_id=entry_id,
        )
    except RegistryError as e:
        raise _registry_http_error(e)
    return {"success": True, **result}


@router.post("/registry/import")
async def import_registry(request: RegistryImportRequest) -> dict:
    """Upsert many entries by (type, key)."""
    result = await bulk_import(
        session_factory=get_session_factory(),
        cache=get_registry_cache(),
        rows=request.entries,
    )
    return {"success": not result["errors"], **result}


@router.get("/registry/export")
async def export_registry(type: str | None = Query(default=None)) -> dict:
    """Export entries in the bulk-import format."""
    try:
        entry_type: RegistryType | None = parse_registry_type(type) if type else None
    except RegistryError as e:
        raise _registry_http_error(e)

    async with session_scope(get_session_factory()) as session:
        entries = await export_entries(session, entry_type=entry_type)
    return {"count": len(entries), "entries": entries}


@router.post("/registry/refresh")
async def refresh_registry() -> dict:
    """Force a registry cache reload."""
    snapshot = await get_registry_cache().refresh_from(get_session_factory())
    return {"success": True, "version": snapshot.version, "counts": snapshot.counts()}


# ============================================================
# Unmappable items
# ============================================================


class ApplyBrandsRequest(BaseModel):
    """Request body for adding mined brands to the registry."""

    brands: list[str]


@router.get("/unmappable/stats")
async def unmappable_stats() -> dict:
    """Unmappable totals by reason and category."""
    async with session_scope(get_session_factory()) as session:
        return await get_unmappable_stats(session)


@router.get("/unmappable/brands")
async def unmappable_brand_candidates(min_frequency: int = Query(default=2, ge=1)) -> dict:
    """Brand candidates mined from MissingBrand titles."""
    registry = get_registry_cache().snapshot()
    async with session_scope(get_session_factory()) as session:
        candidates = await analyze_potential_missing_brands(
            session, registry=registry, min_frequency=min_frequency
        )
    return {"count": len(candidates), "candidates": [c.to_dict() for c in candidates]}


@router.post("/unmappable/brands/apply")
async def apply_brand_candidates(request: ApplyBrandsRequest) -> dict:
    """Add selected brand candidates to the registry."""
    result = await add_potential_brands_to_registry(
        session_factory=get_session_factory(),
        cache=get_registry_cache(),
        brands=request.brands,
    )
    return {"success": True, **result}


@router.get("/unmappable/{raw_item_id}")
async def unmappable_item(raw_item_id: int) -> dict:
    """One unmappable item with its extraction snapshot."""
    async with session_scope(get_session_factory()) as session:
        details = await get_unmappable_item_details(session, raw_item_id)
    if details is None:
        raise HTTPException(status_code=404, detail=f"Unmappable item not found: {raw_item_id}")
    return details


# ============================================================
# Duplicates preview
# ============================================================


@router.get("/duplicates")
async def duplicates_preview(
    threshold: float | None = Query(default=None, ge=0.0, le=1.0),
    limit: int = Query(default=50, le=500),
) -> dict:
    """Product pairs a merge sweep would consider (read-only)."""
    threshold = threshold if threshold is not None else get_settings().merge_threshold
    registry = get_registry_cache().snapshot()
    async with session_scope(get_session_factory()) as session:
        pairs = await find_potential_duplicates(session, registry=registry, threshold=threshold, limit=limit)
    return {"threshold": threshold, "count": len(pairs), "pairs": pairs}
