"""
FastAPI routes – load normalized records, materialize the star schema,
and run the analytics queries against either store.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from dimsim.config import settings
from dimsim.errors import (
    MaterializationInvariantViolation,
    RecordValidationError,
    ReferentialIntegrityError,
    UnknownQueryError,
    ZeroDischargeError,
)
from dimsim.schemas.api import (
    ComparisonResult,
    HealthResponse,
    LoadRequest,
    LoadResult,
    MaterializeResult,
    QueryResult,
    TaskSummary,
)
from dimsim.services.dimensional_store import DimensionalStore
from dimsim.services.queries import QUERIES, compare, run_query
from dimsim.services.stores import StoreRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


def get_stores(request: Request) -> StoreRegistry:
    """FastAPI dependency that yields the application's store registry."""
    return request.app.state.stores


def _require_star(stores: StoreRegistry) -> DimensionalStore:
    store = stores.dimensional_store
    if store is None:
        raise HTTPException(status_code=409, detail="Star schema has not been materialized")
    return store


def _query_params(name: str, **candidates: Any) -> dict[str, Any]:
    """Keep only the parameters the named query accepts and the caller supplied."""
    if name not in QUERIES:
        raise HTTPException(status_code=404, detail=f"Unknown query '{name}'")
    accepted = inspect.signature(QUERIES[name]).parameters
    return {k: v for k, v in candidates.items() if v is not None and k in accepted}


def _dump(rows) -> list[dict[str, Any]]:
    return [row.model_dump(mode="json") for row in rows]


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(stores: StoreRegistry = Depends(get_stores)):
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        materialized=stores.dimensional_store is not None,
    )


# ---------------------------------------------------------------------------
# Bulk load and materialization
# ---------------------------------------------------------------------------

@router.post("/load", response_model=LoadResult)
def load_records(request: LoadRequest, stores: StoreRegistry = Depends(get_stores)):
    """Bulk-load normalized records. The whole batch is rejected on any error."""
    try:
        counts = stores.entity_store.load(request.records)
    except RecordValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors) from exc
    except ReferentialIntegrityError as exc:
        raise HTTPException(status_code=422, detail=exc.violations) from exc
    return LoadResult(row_counts=counts)


@router.post("/materialize", response_model=MaterializeResult)
def materialize_star_schema(stores: StoreRegistry = Depends(get_stores)):
    """Rebuild the star schema from the entity store and swap it in."""
    try:
        store = stores.rematerialize()
    except ReferentialIntegrityError as exc:
        raise HTTPException(status_code=422, detail=exc.violations) from exc
    except MaterializationInvariantViolation as exc:
        raise HTTPException(status_code=409, detail=exc.mismatches) from exc

    summary = store.last_summary or {"pipeline": "", "status": "completed", "tasks": {}}
    run = store.latest_run()
    return MaterializeResult(
        pipeline=summary["pipeline"],
        status=summary["status"],
        tasks={name: TaskSummary(**info) for name, info in summary["tasks"].items()},
        row_counts={
            "input_rows": run.input_row_count or 0,
            "output_rows": run.output_row_count or 0,
        }
        if run
        else {},
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@router.get("/queries", response_model=list[str])
def list_queries():
    return list(QUERIES)


@router.get("/queries/{name}", response_model=QueryResult)
def execute_query(
    name: str,
    store: str = "star",
    year: int | None = None,
    min_encounters: int | None = None,
    limit: int | None = None,
    window_days: int | None = None,
    zero_policy: str | None = None,
    stores: StoreRegistry = Depends(get_stores),
):
    """Run one query against the normalized ("oltp") or dimensional ("star") store."""
    params = _query_params(
        name,
        year=year,
        min_encounters=min_encounters,
        limit=limit,
        window_days=window_days,
        zero_policy=zero_policy,
    )
    if store == "oltp":
        target = stores.entity_store
    elif store == "star":
        target = _require_star(stores)
    else:
        raise HTTPException(status_code=422, detail="store must be 'oltp' or 'star'")

    try:
        rows = run_query(name, target, **params)
    except UnknownQueryError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ZeroDischargeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return QueryResult(query=name, store=store, rows=_dump(rows))


@router.get("/queries/{name}/compare", response_model=ComparisonResult)
def compare_query(
    name: str,
    year: int | None = None,
    min_encounters: int | None = None,
    limit: int | None = None,
    window_days: int | None = None,
    zero_policy: str | None = None,
    stores: StoreRegistry = Depends(get_stores),
):
    """Run one query against both stores and report whether the rows match."""
    params = _query_params(
        name,
        year=year,
        min_encounters=min_encounters,
        limit=limit,
        window_days=window_days,
        zero_policy=zero_policy,
    )
    star = _require_star(stores)
    try:
        comparison = compare(stores.entity_store, star, name, **params)
    except (ZeroDischargeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ComparisonResult(
        query=name,
        identical=comparison.identical,
        oltp_rows=_dump(comparison.oltp_rows),
        star_rows=_dump(comparison.star_rows),
    )
