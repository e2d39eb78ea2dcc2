"""
Model slot tests: single-flight loading, switching, and scoped handle access.

All async code runs through asyncio.run inside plain test functions.
"""

import asyncio

import pytest

from ibex.core.slot import ModelSlot
from ibex.errors import ModelLoadError, ModelNotLoadedError

from fakes import FakeEngine


def _slot(engine: FakeEngine) -> ModelSlot:
    return ModelSlot("chat", engine.load_chat_model)


def test_concurrent_load_if_needed_loads_once():
    engine = FakeEngine(load_delay=0.05)

    async def scenario():
        slot = _slot(engine)
        await asyncio.gather(*(slot.load_if_needed("org/model-x") for _ in range(8)))
        return slot

    slot = asyncio.run(scenario())
    assert engine.loads == [("chat", "org/model-x")]
    assert slot.current_identity == "org/model-x"
    assert slot.has_model
    assert slot.load_count == 1
    assert not slot.is_loading


def test_load_if_needed_is_idempotent():
    engine = FakeEngine()

    async def scenario():
        slot = _slot(engine)
        await slot.load_if_needed("m")
        await slot.load_if_needed("m")
        return slot

    slot = asyncio.run(scenario())
    assert engine.loads == [("chat", "m")]
    assert slot.load_count == 1


def test_concurrent_switch_ends_in_one_ready_state():
    engine = FakeEngine(load_delay=0.02)

    async def scenario():
        slot = _slot(engine)
        observed = []

        async def watch():
            # Identity and handle must never disagree while loads are racing
            for _ in range(20):
                observed.append((slot.current_identity is None, slot.has_model))
                await asyncio.sleep(0.005)

        await asyncio.gather(slot.load_if_needed("A"), slot.load_if_needed("B"), watch())
        return slot, observed

    slot, observed = asyncio.run(scenario())
    assert slot.current_identity in ("A", "B")
    assert slot.has_model
    assert all(empty != present for empty, present in observed)
    # Loads were serialized, never overlapping
    assert sorted(identity for _, identity in engine.loads) == ["A", "B"]


def test_failed_load_does_not_wedge_slot():
    engine = FakeEngine(fail_loads=["broken"])

    async def scenario():
        slot = _slot(engine)
        with pytest.raises(ModelLoadError) as exc_info:
            await slot.load_if_needed("broken")
        assert "broken" in str(exc_info.value)
        assert not slot.is_loading
        await slot.load_if_needed("good")
        return slot

    slot = asyncio.run(scenario())
    assert slot.current_identity == "good"
    assert slot.has_model


def test_waiters_see_failure_then_retry():
    engine = FakeEngine(load_delay=0.03, fail_loads=["broken"])

    async def scenario():
        slot = _slot(engine)
        results = await asyncio.gather(
            slot.load_if_needed("broken"),
            slot.load_if_needed("broken"),
            return_exceptions=True,
        )
        return slot, results

    slot, results = asyncio.run(scenario())
    assert all(isinstance(r, ModelLoadError) for r in results)
    assert not slot.has_model
    assert not slot.is_loading


def test_failed_switch_leaves_slot_empty():
    engine = FakeEngine(fail_loads=["broken"])

    async def scenario():
        slot = _slot(engine)
        await slot.load_if_needed("A")
        with pytest.raises(ModelLoadError):
            await slot.load_if_needed("broken")
        return slot

    slot = asyncio.run(scenario())
    assert slot.current_identity is None
    assert not slot.has_model


def test_explicit_load_failure_keeps_previous_model():
    engine = FakeEngine(fail_loads=["broken"])

    async def scenario():
        slot = _slot(engine)
        await slot.load("A")
        with pytest.raises(ModelLoadError):
            await slot.load("broken")
        return slot

    slot = asyncio.run(scenario())
    assert slot.current_identity == "A"


def test_explicit_load_always_reloads():
    engine = FakeEngine()

    async def scenario():
        slot = _slot(engine)
        await slot.load("A")
        await slot.load("A")
        return slot

    slot = asyncio.run(scenario())
    assert engine.loads == [("chat", "A"), ("chat", "A")]
    assert slot.load_count == 2


def test_use_on_empty_slot_raises_not_loaded():
    async def scenario():
        slot = _slot(FakeEngine())
        async with slot.use():
            pass

    with pytest.raises(ModelNotLoadedError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.status_code == 503
    assert "No chat model loaded" in str(exc_info.value)


def test_use_with_other_identity_resident_raises():
    async def scenario():
        slot = _slot(FakeEngine())
        await slot.load_if_needed("A")
        async with slot.use("B"):
            pass

    with pytest.raises(ModelNotLoadedError) as exc_info:
        asyncio.run(scenario())
    assert "slot holds 'A'" in str(exc_info.value)


def test_use_yields_loaded_model():
    async def scenario():
        slot = _slot(FakeEngine())
        await slot.load_if_needed("A")
        async with slot.use("A") as handle:
            return handle.identity, handle.model

    identity, model = asyncio.run(scenario())
    assert identity == "A"
    assert model == {"kind": "chat", "identity": "A"}


def test_unload_during_use_defers_release():
    async def scenario():
        slot = _slot(FakeEngine())
        await slot.load_if_needed("A")
        async with slot.use() as handle:
            slot.unload()
            assert not slot.has_model
            # The in-flight user keeps its model until the block exits
            assert handle.model is not None
        return handle

    handle = asyncio.run(scenario())
    assert handle.model is None


def test_handle_runs_calls_on_its_worker_thread():
    import threading

    async def scenario():
        slot = _slot(FakeEngine())
        await slot.load_if_needed("A")
        async with slot.use() as handle:
            first = await handle.run(lambda: threading.current_thread().name)
            second = await handle.run(lambda: threading.current_thread().name)
        slot.unload()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert first.startswith("ibex-chat")
