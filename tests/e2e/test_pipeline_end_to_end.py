"""End-to-end tests: HTTP provider -> queue -> processor -> store."""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from token_pipeline.clients.provider import TokenProviderClient
from token_pipeline.config.settings import (
    DatabaseConfig,
    LoggingConfig,
    PipelineServiceConfig,
    ProviderConfig,
    ServerConfig,
)
from token_pipeline.lifecycle import LifecycleController, LifecycleState
from token_pipeline.main import TokenPipelineService


BASE_EPOCH = 1704067200


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


@pytest_asyncio.fixture
async def ticking_provider():
    """Provider whose prices and timestamps advance on every request."""
    state = {"requests": 0}

    async def tokens(request):
        state["requests"] += 1
        n = state["requests"]
        ids = request.query.get("ids", "alpha,beta").split(",")
        entries = [
            {"identifier": identifier, "price": float(n), "timestamp": BASE_EPOCH + n}
            for identifier in ids
        ]
        # One malformed entry per response must not block the rest
        entries.append({"identifier": "broken", "timestamp": BASE_EPOCH})
        if n == 2:
            return web.Response(status=503, text="try again")
        return web.json_response({"data": entries})

    app = web.Application()
    app.router.add_get("/tokens", tokens)
    server = TestServer(app)
    await server.start_server()
    server.state = state
    yield server
    await server.close()


@pytest.mark.integration
class TestPipelineEndToEnd:

    @pytest.mark.asyncio
    async def test_records_flow_into_store(self, pipeline_config, ticking_provider, memory_store):
        pipeline_config.fetch_interval_ms = 30
        provider = TokenProviderClient(
            ProviderConfig(endpoint=str(ticking_provider.make_url("/tokens")), rate_limit_requests_per_minute=0)
        )
        controller = LifecycleController(memory_store, provider, pipeline_config, identifiers=["alpha", "beta"])

        await controller.connect_store()
        try:
            assert await wait_until(lambda: _has_price(memory_store, "beta", 4.0))
        finally:
            await controller.shutdown()

        alpha = await memory_store.get("alpha")
        assert alpha.metrics["price"] >= 4.0
        assert await memory_store.get("broken") is None
        assert controller.worker.stats["validation_failures"] >= 3
        assert controller.worker.stats["retries"] >= 1
        assert controller.state == LifecycleState.STOPPED
        assert provider.session is None

    @pytest.mark.asyncio
    async def test_service_runs_until_shutdown_requested(
        self, pipeline_config, provider_factory, make_entry, store_factory, monkeypatch
    ):
        monkeypatch.setattr("token_pipeline.main.signal.signal", lambda *args: None)
        store = store_factory()
        provider = provider_factory([[make_entry("alpha", price=2.0), make_entry("beta", price=3.0)]])
        config = PipelineServiceConfig(
            pipeline=pipeline_config,
            database=DatabaseConfig(backend="memory"),
            server=ServerConfig(enabled=False),
            logging=LoggingConfig(level="WARNING")
        )
        service = TokenPipelineService(config=config, store=store, provider=provider)

        task = asyncio.create_task(service.start())
        try:
            assert await wait_until(lambda: _count_is(store, 2))
            health = await service.health_check()
            assert health["status"] == "healthy"
            assert health["service"] == "token-pipeline"
        finally:
            service.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)

        assert store.events[-1] == "close"
        assert provider.closed
        assert service.lifecycle.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_logging_configured_before_components_are_built(
        self, pipeline_config, provider_factory, store_factory, monkeypatch
    ):
        calls = []

        def build_lifecycle(*args, **kwargs):
            calls.append("lifecycle")
            return LifecycleController(*args, **kwargs)

        monkeypatch.setattr("token_pipeline.main.setup_logging", lambda config: calls.append("logging"))
        monkeypatch.setattr("token_pipeline.main.LifecycleController", build_lifecycle)
        config = PipelineServiceConfig(pipeline=pipeline_config, server=ServerConfig(enabled=False))

        TokenPipelineService(config=config, store=store_factory(), provider=provider_factory())

        assert calls == ["logging", "lifecycle"]

    @pytest.mark.asyncio
    async def test_service_survives_store_connection_failure(
        self, pipeline_config, provider_factory, store_factory, monkeypatch
    ):
        monkeypatch.setattr("token_pipeline.main.signal.signal", lambda *args: None)
        store = store_factory()
        store.connect_error = OSError("connection refused")
        provider = provider_factory()
        config = PipelineServiceConfig(
            pipeline=pipeline_config,
            server=ServerConfig(enabled=False),
            logging=LoggingConfig(level="CRITICAL")
        )
        service = TokenPipelineService(config=config, store=store, provider=provider)

        task = asyncio.create_task(service.start())
        await asyncio.sleep(0.1)
        assert not task.done()

        health = await service.health_check()
        assert health["status"] == "unhealthy"
        assert provider.calls == []

        service.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
        assert provider.closed


async def _has_price(store, identifier, minimum):
    record = await store.get(identifier)
    return record is not None and record.metrics["price"] >= minimum


async def _count_is(store, expected):
    return await store.count() == expected
