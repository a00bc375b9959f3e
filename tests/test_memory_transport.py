"""Tests for the in-memory adapters."""

from __future__ import annotations

import asyncio

import pytest

from reliable_pipeline.exceptions import TransportError
from reliable_pipeline.memory import InMemorySnapshotStore, InMemoryTransport
from reliable_pipeline.ports.snapshot import PipelineSnapshot
from reliable_pipeline.ports.transport import ITransport

from .conftest import make_envelope, make_message


async def test_fetch_returns_batches_in_delivery_order(transport) -> None:
    transport.deliver(*[make_message(i) for i in range(5)])

    first = await transport.fetch(3, 0.01)
    second = await transport.fetch(3, 0.01)

    assert [m.sequence_token for m in first] == [0, 1, 2]
    assert [m.sequence_token for m in second] == [3, 4]
    assert transport.pending == 0


async def test_empty_fetch_waits_for_timeout(transport) -> None:
    assert await transport.fetch(10, 0.01) == []


async def test_fetch_wakes_on_delivery(transport) -> None:
    waiting = asyncio.create_task(transport.fetch(10, 5.0))
    await asyncio.sleep(0.01)
    transport.deliver(make_message(0))

    assert [m.sequence_token for m in await asyncio.wait_for(waiting, 1.0)] == [0]


async def test_commit_tracks_latest_position(transport) -> None:
    await transport.commit(make_message(0))
    await transport.commit(make_message(1))
    await transport.commit(make_message(0, partition_key="p-1"))

    assert transport.committed_position("p-0") == 1
    assert transport.committed_position("p-1") == 0
    assert transport.committed_position("p-2") is None
    assert len(transport.get_committed()) == 3


async def test_republish_failures_are_injectable(transport) -> None:
    transport.fail_republish(1)
    with pytest.raises(TransportError):
        await transport.republish("dlq", make_envelope())

    await transport.republish("dlq", make_envelope())
    transport.assert_dead_lettered(1, reason="TransientError", destination="dlq")
    assert transport.get_dead_lettered("other") == []


def test_assert_dead_lettered_reports_reasons(transport) -> None:
    with pytest.raises(AssertionError, match="Expected 1"):
        transport.assert_dead_lettered(1)


def test_transport_satisfies_protocol(transport) -> None:
    assert isinstance(transport, ITransport)
    assert isinstance(InMemoryTransport(), ITransport)


async def test_snapshot_store_load_consumes_snapshot() -> None:
    store = InMemorySnapshotStore()
    assert await store.load() is None

    await store.save(PipelineSnapshot())

    assert await store.load() == PipelineSnapshot()
    assert await store.load() is None
