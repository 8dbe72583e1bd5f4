"""
FastAPI Application Module

Application factory for the routing service: store selection, routing
components, background sweeper, exception mapping and health checks.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..balancer import LoadBalancer
from ..base import (
    AgentNotFoundError,
    CapacityRaceLost,
    InvalidStateTransition,
    QueueEntryNotFound,
    RoutingError,
    RuleNotFoundError,
    StoreUnavailable,
)
from ..config import RoutingConfig, configure_logging
from ..escalation import EscalationEvaluator, EscalationNotifier
from ..store import DatabaseManager, InMemoryRoutingStore, RoutingStore, SqlRoutingStore
from ..sweeper import RoutingSweeper
from .routes import init_routes, router


logger = structlog.get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    timestamp: datetime
    checks: Dict[str, Any] = {}


# =============================================================================
# Exception Handlers
# =============================================================================


_ERROR_STATUS: Tuple[Tuple[type, int, str], ...] = (
    (CapacityRaceLost, 409, "CAPACITY_RACE_LOST"),
    (InvalidStateTransition, 409, "INVALID_STATE_TRANSITION"),
    (AgentNotFoundError, 404, "AGENT_NOT_FOUND"),
    (RuleNotFoundError, 404, "RULE_NOT_FOUND"),
    (QueueEntryNotFound, 404, "QUEUE_ENTRY_NOT_FOUND"),
    (StoreUnavailable, 503, "STORE_UNAVAILABLE"),
)


async def routing_exception_handler(request: Request, exc: RoutingError):
    """Map routing errors to HTTP responses."""
    status_code, code = 500, "ROUTING_ERROR"
    for error_type, error_status, error_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code, code = error_status, error_code
            break

    if status_code >= 500:
        logger.error("routing_request_failed", path=request.url.path, error=str(exc))

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": code,
                "message": str(exc),
                "timestamp": datetime.utcnow().isoformat(),
            },
        },
    )


# =============================================================================
# Application Factory
# =============================================================================


def build_store(config: RoutingConfig) -> Tuple[RoutingStore, Optional[DatabaseManager]]:
    """SQL store when a database URL is configured, in-memory otherwise."""
    if not config.database_url:
        return InMemoryRoutingStore(), None

    db = DatabaseManager(
        database_url=config.database_url,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        echo=config.debug,
    )
    return SqlRoutingStore(db), db


def create_app(
    config: Optional[RoutingConfig] = None,
    store: Optional[RoutingStore] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Routing configuration; read from the environment when omitted
        store: Routing store to use instead of one built from ``config``

    Returns:
        Configured FastAPI application
    """
    config = config or RoutingConfig.from_env()
    configure_logging(config.log_level, config.log_format)

    db: Optional[DatabaseManager] = None
    if store is None:
        store, db = build_store(config)

    balancer = LoadBalancer(store, config=config)
    escalation = EscalationEvaluator(store)
    sweeper = RoutingSweeper(
        balancer,
        escalation,
        notifier=EscalationNotifier.with_logging_channels(),
        interval_seconds=config.sweep_interval_seconds,
    )
    init_routes(balancer, escalation)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("routing_service_starting", version=config.version)

        if db is not None:
            await db.create_all()
            if not await db.health_check():
                logger.error("routing_database_unreachable")

        if config.sweeper_enabled:
            await sweeper.start()

        yield

        logger.info("routing_service_stopping")
        await sweeper.stop()
        await store.close()

    app = FastAPI(
        title=config.title,
        version=config.version,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.balancer = balancer
    app.state.escalation = escalation
    app.state.sweeper = sweeper

    app.add_exception_handler(RoutingError, routing_exception_handler)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        database = "memory"
        status = "healthy"
        if db is not None:
            db_healthy = await db.health_check()
            database = "ok" if db_healthy else "error"
            if not db_healthy:
                status = "degraded"

        return HealthResponse(
            status=status,
            version=config.version,
            timestamp=datetime.utcnow(),
            checks={
                "api": "ok",
                "database": database,
                "sweeper": "running" if sweeper.running else "stopped",
            },
        )

    app.include_router(router, prefix=config.api_prefix)

    return app


__all__ = ["create_app", "build_store", "routing_exception_handler"]
