"""
FastAPI Sanctions Screening API Server

Provides REST API endpoints around the sanctions matching engine:
screening of one or many profiles, cache statistics, forced data refresh
and health.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends

from api.models import (
    ScreeningRequest,
    BatchScreeningRequest,
    ProfileRequest,
    ScreeningResponse,
    BatchScreeningResponse,
    MatchDetail,
    EntityDetail,
    AliasDetail,
    AddressDetail,
    SummaryDetail,
    StatsResponse,
    ServiceStats,
    DataRefreshResponse,
    RefreshStatus,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import setup_exception_handlers, RequestLoggingMiddleware
from config_manager import get_config, configure_logging, ConfigManager, ConfigurationError
from downloader import ParseError
from screener import SanctionsMatchingEngine
from watchlist_models import ClientProfile, ScreeningResult, WeightedMatch, SanctionedEntity

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH") or None
OFAC_FILE = os.getenv("OFAC_FILE", "")  # Optional local feed to seed the OFAC cache
UN_FILE = os.getenv("UN_FILE", "")  # Optional local feed to seed the UN cache
REFRESH_ON_STARTUP = os.getenv("REFRESH_ON_STARTUP", "false").lower() in ("1", "true", "yes")

# Global state
_engine: Optional[SanctionsMatchingEngine] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None


def get_engine() -> SanctionsMatchingEngine:
    """Dependency to get the matching engine instance."""
    if _engine is None:
        raise HTTPException(
            status_code=503, detail="Screening engine not initialized. Service is starting up."
        )
    return _engine


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


# Create FastAPI application
app = FastAPI(
    title="Sanctions Screening API",
    description="API for screening individuals and organizations against OFAC and UN sanctions lists",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Initialize the engine and optionally seed or refresh the watchlists."""
    global _engine, _config, _startup_time

    start_time = time.time()
    try:
        _config = get_config(CONFIG_PATH)
        configure_logging(_config)
        logger.info("🚀 Starting Sanctions Screening API...")

        _engine = SanctionsMatchingEngine(config=_config)

        for source_name, path in (("OFAC", OFAC_FILE), ("UN", UN_FILE)):
            if path:
                try:
                    count = _engine.load_source_file(source_name, path)
                    logger.info(f"✓ Seeded {count} {source_name} entities from {path}")
                except (KeyError, ParseError) as e:
                    logger.error(f"✗ Could not seed {source_name} from {path}: {e}")

        if REFRESH_ON_STARTUP:
            for status in await _engine.refresh_all_data():
                logger.info(f"  {status['service']}: {status['status']}")

        _startup_time = datetime.now(timezone.utc)
        stats = _engine.get_stats()
        logger.info(
            "✓ API ready: %d entities loaded in %.2f seconds",
            stats["totalEntries"],
            time.time() - start_time,
        )

    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Sanctions Screening API...")
    if _engine is not None:
        _engine.shutdown()


def _profile_from_request(request: ProfileRequest) -> ClientProfile:
    return ClientProfile.from_dict(request.model_dump(exclude_none=True))


def _entity_to_response(entity: SanctionedEntity) -> EntityDetail:
    return EntityDetail(
        uid=entity.uid,
        source=entity.source,
        entity_type=entity.entity_type.value,
        name=entity.primary_name,
        aliases=[AliasDetail(name=a.name, category=a.category) for a in entity.aliases],
        addresses=[
            AddressDetail(full_address=a.full_address, city=a.city, country=a.country)
            for a in entity.addresses
        ],
        programs=list(entity.programs),
        severity=entity.severity.value,
        remarks=entity.remarks,
        reference_number=entity.reference_number,
        nationalities=list(entity.nationalities),
        dates_of_birth=list(entity.dates_of_birth),
    )


def _match_to_response(match: WeightedMatch) -> MatchDetail:
    return MatchDetail(
        entity=_entity_to_response(match.entity),
        matched_field=match.matched_field.value,
        matched_value=match.matched_value,
        confidence=round(match.confidence, 4),
        weighted_confidence=round(match.weighted_confidence, 4),
        risk_level=match.risk_level.value,
        source=match.source,
        search_term=match.search_term,
        flags=list(match.flags),
    )


def _result_to_response(result: ScreeningResult, processing_time_ms: int) -> ScreeningResponse:
    summary = result.summary
    return ScreeningResponse(
        screening_id=str(uuid.uuid4()),
        screening_date=result.timestamp.isoformat(),
        search_terms=list(result.search_terms),
        matches=[_match_to_response(m) for m in result.matches],
        summary=SummaryDetail(
            total_matches=summary.total_matches,
            high_risk_matches=summary.high_risk_matches,
            sources=list(summary.sources),
            risk_score=summary.risk_score,
            recommendation=summary.recommendation.value,
        ),
        failed_sources=list(result.failed_sources),
        processing_time_ms=processing_time_ms,
        algorithm_version=get_config_instance().algorithm.version,
    )


def _stats_to_response(stats: dict) -> StatsResponse:
    return StatsResponse(
        services=[
            ServiceStats(
                name=s["name"],
                total_entries=s["totalEntries"],
                last_update=s["lastUpdate"],
                stale=s["stale"],
                last_error=s["lastError"],
            )
            for s in stats["services"]
        ],
        total_entries=stats["totalEntries"],
        last_update=stats["lastUpdate"],
    )


@app.post(
    "/api/v1/screen",
    response_model=ScreeningResponse,
    responses={
        200: {"model": ScreeningResponse, "description": "Screening completed successfully"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Engine not initialized"},
    },
    summary="Screen a profile",
    description="Screen an individual or organization against OFAC and UN sanctions lists",
)
async def screen_profile(
    request: ScreeningRequest,
    engine: SanctionsMatchingEngine = Depends(get_engine),
):
    """Screen one profile against every configured source."""
    start_time = time.time()

    result = await engine.screen_entity(
        _profile_from_request(request),
        threshold=request.threshold,
        include_aliases=request.include_aliases,
        max_results=request.max_results,
    )

    processing_time_ms = int((time.time() - start_time) * 1000)
    return _result_to_response(result, processing_time_ms)


@app.post(
    "/api/v1/screen/batch",
    response_model=BatchScreeningResponse,
    responses={
        200: {"model": BatchScreeningResponse, "description": "Batch screening completed"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Engine not initialized"},
    },
    summary="Screen several profiles",
    description="Screen a list of profiles; failed items are omitted from the results",
)
async def screen_batch(
    request: BatchScreeningRequest,
    engine: SanctionsMatchingEngine = Depends(get_engine),
):
    """Screen a list of profiles in concurrent batches."""
    start_time = time.time()

    results = await engine.batch_screen(
        [_profile_from_request(p) for p in request.profiles],
        batch_size=request.batch_size,
        threshold=request.threshold,
        include_aliases=request.include_aliases,
        max_results=request.max_results,
    )

    processing_time_ms = int((time.time() - start_time) * 1000)
    return BatchScreeningResponse(
        screening_id=str(uuid.uuid4()),
        total_submitted=len(request.profiles),
        total_processed=len(results),
        results=[_result_to_response(r, processing_time_ms) for r in results],
        processing_time_ms=processing_time_ms,
    )


@app.get(
    "/api/v1/stats",
    response_model=StatsResponse,
    summary="Watchlist statistics",
    description="Entry count and last refresh time per source",
)
async def stats(engine: SanctionsMatchingEngine = Depends(get_engine)):
    """Report cache statistics."""
    return _stats_to_response(engine.get_stats())


@app.post(
    "/api/v1/data/refresh",
    response_model=DataRefreshResponse,
    responses={
        200: {"model": DataRefreshResponse, "description": "Refresh attempted for every source"},
        503: {"model": ErrorResponse, "description": "Engine not initialized"},
    },
    summary="Refresh sanctions data",
    description="Download and parse every source now. A failed source keeps its previous data.",
)
async def refresh_data(engine: SanctionsMatchingEngine = Depends(get_engine)):
    """Force a refresh of all sources."""
    start_time = time.time()

    statuses = await engine.refresh_all_data()
    processing_time_ms = int((time.time() - start_time) * 1000)

    return DataRefreshResponse(
        success=all(s["status"] == "success" for s in statuses),
        results=[RefreshStatus(**s) for s in statuses],
        total_entities=engine.get_stats()["totalEntries"],
        processing_time_ms=processing_time_ms,
    )


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service status and loaded entity counts",
)
async def health(engine: SanctionsMatchingEngine = Depends(get_engine)):
    """Report service health.

    Degraded when any source has never loaded data.
    """
    stats_response = _stats_to_response(engine.get_stats())
    has_all_data = all(s.last_update is not None for s in stats_response.services)

    uptime = None
    if _startup_time is not None:
        uptime = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    return HealthResponse(
        status="healthy" if has_all_data else "degraded",
        entities_loaded=stats_response.total_entries,
        sources=stats_response.services,
        algorithm_version=get_config_instance().algorithm.version,
        uptime_seconds=uptime,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
