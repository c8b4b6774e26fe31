"""Integration tests for pipeline start-up and shutdown ordering."""

import asyncio

import pytest

from token_pipeline.exceptions import LifecycleError, StoreConnectionError
from token_pipeline.lifecycle import LifecycleController, LifecycleState
from token_pipeline.processor import ProcessorState


def unreachable(store_factory):
    store = store_factory()
    store.connect_error = OSError("connection refused")
    return store


@pytest.mark.integration
class TestLifecycleController:

    @pytest.mark.asyncio
    async def test_start_order_and_running_state(self, pipeline_config, provider_factory, make_entry, store_factory):
        store = store_factory()
        controller = LifecycleController(store, provider_factory([[make_entry("a")]]), pipeline_config)

        await controller.connect_store()
        try:
            assert controller.state == LifecycleState.RUNNING
            assert controller.processor.running
            assert controller.scheduler.running
            assert store.events[0] == "connect"
        finally:
            await controller.shutdown()

    @pytest.mark.asyncio
    async def test_connect_failure_leaves_pipeline_stopped(self, pipeline_config, provider_factory, store_factory):
        provider = provider_factory([[]])
        controller = LifecycleController(unreachable(store_factory), provider, pipeline_config)

        with pytest.raises(StoreConnectionError):
            await controller.connect_store()

        assert controller.state == LifecycleState.FAILED
        assert "connection refused" in controller.error
        assert not controller.scheduler.running
        assert not controller.processor.running
        await asyncio.sleep(0.1)
        assert provider.calls == []

        health = await controller.health_check()
        assert health["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_failed_ping_is_connection_failure(self, pipeline_config, provider_factory, store_factory):
        store = store_factory()
        store.ping_ok = False
        controller = LifecycleController(store, provider_factory(), pipeline_config)

        with pytest.raises(StoreConnectionError):
            await controller.connect_store()

        assert controller.state == LifecycleState.FAILED

    @pytest.mark.asyncio
    async def test_store_ready_only_once(self, pipeline_config, provider_factory, store_factory):
        controller = LifecycleController(store_factory(), provider_factory(), pipeline_config)
        await controller.connect_store()
        try:
            with pytest.raises(LifecycleError):
                await controller.on_store_ready()
        finally:
            await controller.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_mid_cycle_persists_queued_records(self, pipeline_config, provider_factory, make_entry, store_factory):
        pipeline_config.fetch_interval_ms = 10000
        pipeline_config.batch_interval_ms = 10000
        provider = provider_factory([[make_entry(f"t{i}") for i in range(3)]], delay=0.05)
        store = store_factory()
        controller = LifecycleController(store, provider, pipeline_config)

        await controller.connect_store()
        await asyncio.sleep(0.01)
        assert controller.scheduler.cycle_in_flight

        await controller.shutdown()

        assert controller.state == LifecycleState.STOPPED
        assert await store.count() == 3
        assert store.events == ["connect", "upsert:t0", "upsert:t1", "upsert:t2", "close"]
        assert controller.processor.state == ProcessorState.STOPPED
        assert provider.closed

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, pipeline_config, provider_factory, store_factory):
        store = store_factory()
        controller = LifecycleController(store, provider_factory(), pipeline_config)
        await controller.connect_store()

        await controller.shutdown()
        await controller.shutdown()

        assert store.events.count("close") == 1

    @pytest.mark.asyncio
    async def test_shutdown_after_failed_connect_closes_resources(self, pipeline_config, provider_factory, store_factory):
        store = unreachable(store_factory)
        provider = provider_factory()
        controller = LifecycleController(store, provider, pipeline_config)
        with pytest.raises(StoreConnectionError):
            await controller.connect_store()

        await controller.shutdown()

        assert provider.closed
        assert store.events == ["connect", "close"]
        assert controller.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_health_when_running(self, pipeline_config, provider_factory, store_factory):
        controller = LifecycleController(store_factory(), provider_factory(), pipeline_config)
        await controller.connect_store()
        try:
            health = await controller.health_check()
        finally:
            await controller.shutdown()

        assert health["status"] == "healthy"
        assert set(health["components"]) == {"store", "scheduler", "processor"}
