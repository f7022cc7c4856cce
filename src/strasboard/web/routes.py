"""API routes for source data"""

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from strasboard.aggregator import Aggregator
from strasboard.context import AppContext
from strasboard.datasources.base import Result, format_timestamp, utcnow

logger = logging.getLogger(__name__)
router = APIRouter()

INVALID_ID_TTL = timedelta(minutes=1)


def _get_context(request: Request) -> AppContext:
    """
    Get AppContext from the application state.

    Raises:
        RuntimeError: If AppContext is not available
    """
    context = request.app.state.context
    if not context:
        raise RuntimeError("AppContext not available. Web app must be initialized with context.")
    return context


def _get_aggregator(request: Request) -> Aggregator:
    return _get_context(request).aggregator


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check"""
    return {"status": "ok", "timestamp": format_timestamp(utcnow())}


@router.get("/api/sources")
async def list_sources(request: Request) -> dict[str, Any]:
    """Registered data sources"""
    registry = _get_context(request).registry
    return {
        "sources": [
            {"name": source.name(), "description": source.description}
            for source in registry.get_all()
        ]
    }


@router.get("/api/all")
async def get_all(request: Request) -> dict[str, Any]:
    """Every source fetched concurrently, plus an assembly timestamp"""
    aggregate = await _get_aggregator(request).fetch_all()
    return aggregate.to_dict()


@router.get("/api/cache")
async def cache_status(request: Request) -> dict[str, Any]:
    """Freshness of every cache entry"""
    return await _get_context(request).cache.get_status()


@router.get("/api/transport/live")
async def transport_live(request: Request, id: str = "") -> dict[str, Any]:
    """Live departures for a single stop"""
    aggregator = _get_aggregator(request)
    try:
        stop_id = int(id)
    except ValueError:
        return Result.failure("invalid id", INVALID_ID_TTL).to_dict()

    try:
        result = await aggregator.fetch_one("transport", stop_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown source: transport")
    return result.to_dict()


@router.get("/api/{name}")
async def get_source(name: str, request: Request) -> dict[str, Any]:
    """A single source, served through the cache"""
    try:
        result = await _get_aggregator(request).fetch_cached_by_name(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown source: {name}")
    return result.to_dict()
