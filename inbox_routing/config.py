"""
Routing Configuration Module

Runtime settings for the routing core and the logging setup shared by the
API process and the background sweeper.
"""

import logging
import os
import sys
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from .base import RoutingStrategy


class RoutingConfig(BaseModel):
    """Routing core configuration."""

    # Service
    title: str = "Inbox Routing API"
    version: str = "1.0.0"
    api_prefix: str = "/api/v1"
    debug: bool = False

    # Database; None keeps routing state in process memory
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Routing defaults
    default_strategy: RoutingStrategy = RoutingStrategy.ROUND_ROBIN
    default_max_concurrent_conversations: int = Field(default=5, ge=1)

    # Decision path
    decision_timeout_seconds: float = Field(default=2.0, gt=0)
    race_retries: int = Field(default=1, ge=0)
    honor_preferred_agent: bool = True

    # Queue
    minutes_per_queue_position: int = Field(default=5, ge=1)

    # Rebalancing
    rebalance_threshold: float = Field(default=0.3, gt=0, le=1)
    rebalance_max_moves_per_agent: int = Field(default=2, ge=1)

    # Sweeper
    sweeper_enabled: bool = True
    sweep_interval_seconds: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "RoutingConfig":
        """Load configuration from environment variables."""
        return cls(
            debug=os.getenv("ROUTING_DEBUG", "false").lower() == "true",
            database_url=os.getenv("ROUTING_DATABASE_URL") or None,
            database_pool_size=int(os.getenv("ROUTING_DATABASE_POOL_SIZE", "5")),
            database_max_overflow=int(os.getenv("ROUTING_DATABASE_MAX_OVERFLOW", "10")),
            default_strategy=RoutingStrategy(
                os.getenv("ROUTING_DEFAULT_STRATEGY", RoutingStrategy.ROUND_ROBIN.value)
            ),
            default_max_concurrent_conversations=int(
                os.getenv("ROUTING_DEFAULT_MAX_CONCURRENT", "5")
            ),
            decision_timeout_seconds=float(os.getenv("ROUTING_DECISION_TIMEOUT_SECONDS", "2.0")),
            race_retries=int(os.getenv("ROUTING_RACE_RETRIES", "1")),
            honor_preferred_agent=os.getenv("ROUTING_HONOR_PREFERRED_AGENT", "true").lower() == "true",
            minutes_per_queue_position=int(os.getenv("ROUTING_MINUTES_PER_QUEUE_POSITION", "5")),
            rebalance_threshold=float(os.getenv("ROUTING_REBALANCE_THRESHOLD", "0.3")),
            sweeper_enabled=os.getenv("ROUTING_SWEEPER_ENABLED", "true").lower() == "true",
            sweep_interval_seconds=float(os.getenv("ROUTING_SWEEP_INTERVAL_SECONDS", "30")),
            log_level=os.getenv("ROUTING_LOG_LEVEL", "INFO"),
            log_format=os.getenv("ROUTING_LOG_FORMAT", "json"),
        )


def configure_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Configure stdlib logging and structlog for the routing process."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


__all__ = ["RoutingConfig", "configure_logging"]
