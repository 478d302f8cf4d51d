import asyncio
import gc

import pytest

from fakes import FakeContainer, FakeHandle
from provisioning.errors import TransportError
from provisioning.events import ContainerLogEventHub, EventHubRegistry


def _registry_with_handles():
    registry = EventHubRegistry()
    handles = [registry.register_handle(FakeHandle("peer0")), registry.register_handle(FakeHandle("peer1"))]
    return registry, handles


def _assert_cleaned(registry, handles):
    assert [h.disconnect_count for h in handles] == [1, 1]
    assert len(registry) == 0


def test_cleanup_on_normal_exit():
    registry, handles = _registry_with_handles()

    async def scenario():
        async with registry.scope():
            await asyncio.sleep(0)

    asyncio.run(scenario())
    _assert_cleaned(registry, handles)


def test_cleanup_on_uncaught_fault():
    registry, handles = _registry_with_handles()

    async def scenario():
        async with registry.scope():
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())
    _assert_cleaned(registry, handles)


def test_cleanup_on_unobserved_task_exception():
    registry, handles = _registry_with_handles()
    observed = {}

    async def fail():
        raise RuntimeError("nobody awaits me")

    async def scenario():
        async with registry.scope():
            task = asyncio.get_running_loop().create_task(fail())
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert task.done()
            del task
            gc.collect()
            # Released before the scope is left
            observed["counts"] = [h.disconnect_count for h in handles]
            observed["size"] = len(registry)

    asyncio.run(scenario())
    assert observed == {"counts": [1, 1], "size": 0}
    _assert_cleaned(registry, handles)


def test_scope_restores_the_exception_handler():
    registry = EventHubRegistry()

    def previous(loop, context):
        pass

    async def scenario():
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(previous)
        async with registry.scope():
            assert loop.get_exception_handler() is not previous
        return loop.get_exception_handler()

    assert asyncio.run(scenario()) is previous


def test_sync_context_manager():
    registry, handles = _registry_with_handles()
    with pytest.raises(ValueError):
        with registry:
            raise ValueError("fault")
    _assert_cleaned(registry, handles)


def test_cleanup_all_is_idempotent():
    registry, handles = _registry_with_handles()
    assert registry.cleanup_all() == 2
    assert registry.cleanup_all() == 0
    _assert_cleaned(registry, handles)


def test_disconnected_handles_are_not_disconnected_again():
    registry, handles = _registry_with_handles()
    handles[0].disconnect()
    assert registry.cleanup_all() == 1
    _assert_cleaned(registry, handles)


def test_failing_disconnect_does_not_stop_cleanup():
    registry, handles = _registry_with_handles()

    def broken():
        raise OSError("socket already closed")

    handles[0].disconnect = broken
    assert registry.cleanup_all() == 1
    assert handles[1].disconnect_count == 1
    assert len(registry) == 0


def test_unregister_handle():
    registry, handles = _registry_with_handles()
    assert registry.unregister_handle("peer0") is handles[0]
    assert registry.unregister_handle("peer0") is None
    assert "peer0" not in registry
    registry.cleanup_all()
    assert handles[0].disconnect_count == 0


def test_duplicate_handle_id():
    registry, _ = _registry_with_handles()
    with pytest.raises(ValueError):
        registry.register_handle(FakeHandle("peer0"))


def test_container_log_event_hub():
    container = FakeContainer("peer0", [b"line one\nJoining gossip net", b"work of channel ch1\n"])
    hub = ContainerLogEventHub("peer0/ch1", container).connect()

    line = asyncio.run(hub.wait_for(r"Joining gossip network of channel ch1", timeout=5))

    assert line == "Joining gossip network of channel ch1"
    assert hub.is_connected()
    hub.disconnect()
    assert not hub.is_connected()
    assert container.streams[0].closed


def test_container_log_event_hub_stream_ends():
    hub = ContainerLogEventHub("peer0/ch1", FakeContainer("peer0", [b"nothing\n"])).connect()
    with pytest.raises(TransportError, match="ended"):
        asyncio.run(hub.wait_for("never", timeout=5))


def test_container_log_event_hub_not_connected():
    hub = ContainerLogEventHub("peer0/ch1", FakeContainer("peer0"))
    with pytest.raises(TransportError):
        asyncio.run(hub.wait_for("anything", timeout=1))
