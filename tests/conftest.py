"""Shared pytest fixtures for routing tests."""

from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from inbox_routing import (
    AgentCapacity,
    AgentStatus,
    InMemoryRoutingStore,
    LoadBalancer,
    RoutingConfig,
)


TENANT = "org_acme"
OTHER_TENANT = "org_globex"


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def config() -> RoutingConfig:
    """Routing configuration with the background sweeper off."""
    return RoutingConfig(sweeper_enabled=False, log_format="console")


@pytest.fixture
def store() -> InMemoryRoutingStore:
    return InMemoryRoutingStore()


@pytest.fixture
def balancer(store, config) -> LoadBalancer:
    return LoadBalancer(store, config=config)


AddAgent = Callable[..., Awaitable[AgentCapacity]]


@pytest.fixture
def add_agent(balancer) -> AddAgent:
    """Register an available agent; keyword arguments override defaults."""

    async def _add(agent_id: str, tenant_id: str = TENANT, **overrides) -> AgentCapacity:
        overrides.setdefault("status", AgentStatus.AVAILABLE)
        overrides.setdefault("max_concurrent_conversations", 5)
        return await balancer.capacity.register_agent(tenant_id, agent_id, **overrides)

    return _add


# =============================================================================
# API Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def app(store, config) -> FastAPI:
    """Create test FastAPI application backed by the in-memory store."""
    from inbox_routing.api import create_app

    return create_app(config, store=store)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client calling the app in-process."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Organization-ID": TENANT},
    ) as ac:
        yield ac
