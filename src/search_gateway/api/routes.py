"""API routes for the search gateway."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from search_gateway.analytics.tracker import SearchFeedback
from search_gateway.auth import Identity
from search_gateway.errors import ComputeError, ValidationError
from search_gateway.search.fingerprint import org_key_pattern
from search_gateway.search.models import parse_feedback_request
from search_gateway.search.orchestrator import SearchOrchestrator, SearchServices

logger = logging.getLogger(__name__)
router = APIRouter()


def get_services(request: Request) -> SearchServices:
    return request.app.state.services


def get_orchestrator(request: Request) -> SearchOrchestrator:
    return request.app.state.orchestrator


async def get_identity(
    request: Request,
    services: SearchServices = Depends(get_services),
) -> Identity:
    """Resolve the caller for endpoints outside the search pipeline."""
    return await services.identity_resolver.resolve(request.headers)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e


@router.post("/search")
async def search(
    request: Request,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Run a search.

    The body is parsed by the pipeline rather than by FastAPI so that a
    caller without valid identity gets 401 before any body validation.
    """
    try:
        payload = await request.json()
    except ValueError:
        # Auth is still checked first; an unparseable body fails validation
        payload = None

    outcome = await orchestrator.search(request.headers, payload)
    return JSONResponse(
        content=outcome.response.model_dump(mode="json"),
        headers=outcome.headers,
    )


@router.get("/quota")
async def get_quota(
    identity: Identity = Depends(get_identity),
    services: SearchServices = Depends(get_services),
) -> dict[str, Any]:
    """Get the caller's organization quota for every metered resource."""
    manager = services.quota_manager
    plan = await manager.get_plan(identity.org_id)
    usage = await manager.get_usage(identity.org_id)
    return {
        "org_id": identity.org_id,
        "plan_tier": plan.value,
        "resources": {name: record.to_dict() for name, record in usage.items()},
    }


@router.post("/search/feedback", status_code=201)
async def submit_feedback(
    request: Request,
    identity: Identity = Depends(get_identity),
    services: SearchServices = Depends(get_services),
) -> dict[str, Any]:
    """Record feedback on one result of an earlier search."""
    body = parse_feedback_request(await _json_body(request))
    feedback = SearchFeedback(
        search_id=body.search_id,
        result_id=body.result_id,
        feedback_type=body.feedback_type,
        rating=body.rating,
        org_id=identity.org_id,
        user_id=identity.user_id,
    )

    feedback_id = await services.tracker.track_feedback(feedback)
    if feedback_id is None:
        raise ComputeError("Failed to record feedback")
    return {"feedback_id": feedback_id}


@router.get("/analytics/search")
async def search_analytics(
    days: int = Query(default=7, ge=1, le=90, description="Look-back period in days"),
    identity: Identity = Depends(get_identity),
    services: SearchServices = Depends(get_services),
) -> dict[str, Any]:
    """Get search metrics for the caller's organization."""
    metrics = await services.tracker.get_metrics(identity.org_id, days)
    return metrics.to_dict()


@router.get("/cache/stats")
async def cache_stats(
    identity: Identity = Depends(get_identity),
    services: SearchServices = Depends(get_services),
) -> dict[str, Any]:
    """
    Get search cache effectiveness counters.

    Counters cover every organization served by this process; none of them
    identify individual queries or keys.
    """
    return {"scope": "process", **services.cache.get_stats()}


@router.delete("/cache")
async def clear_cache(
    identity: Identity = Depends(get_identity),
    services: SearchServices = Depends(get_services),
) -> dict[str, Any]:
    """Drop every cached search of the caller's organization."""
    cleared = await services.cache.invalidate_pattern(org_key_pattern(identity.org_id))
    logger.info(f"Cleared {cleared} cached searches for {identity.org_id}")
    return {"org_id": identity.org_id, "cleared": cleared}
