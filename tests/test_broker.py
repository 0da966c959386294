"""Tests for the in-memory partitioned broker."""

import asyncio

import pytest

from pipeline_core.broker import InMemoryBroker


async def drain(condition, attempts=100):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestProduce:
    @pytest.mark.asyncio
    async def test_create_topic_is_idempotent(self):
        broker = InMemoryBroker(default_partitions=2)

        assert await broker.create_topic("orders")
        assert not await broker.create_topic("orders", partitions=8)
        assert broker.topics() == {"orders": 2}

    @pytest.mark.asyncio
    async def test_same_key_same_partition_with_increasing_offsets(self):
        broker = InMemoryBroker(default_partitions=4)

        first = await broker.produce("orders", {"n": 1}, key="customer-7")
        second = await broker.produce("orders", {"n": 2}, key="customer-7")

        assert first.partition == second.partition
        assert (first.offset, second.offset) == (0, 1)

    @pytest.mark.asyncio
    async def test_unkeyed_messages_round_robin(self):
        broker = InMemoryBroker(default_partitions=3)

        partitions = [(await broker.produce("t", i)).partition for i in range(6)]

        assert partitions == [0, 1, 2, 0, 1, 2]

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        broker = InMemoryBroker()
        payload = {"items": [1]}

        await broker.produce("t", payload)
        payload["items"].append(2)

        assert broker.messages("t")[0].value == {"items": [1]}
        assert broker.messages("missing") == []


class TestConsume:
    @pytest.mark.asyncio
    async def test_only_new_messages_by_default(self):
        broker = InMemoryBroker(default_partitions=1)
        await broker.produce("t", "old")
        received = []

        async def handler(message):
            received.append(message.value)

        consumer = broker.consumer("g")
        await consumer.subscribe("t")
        await consumer.run(handler)
        await broker.produce("t", "new")
        await drain(lambda: received)
        await consumer.disconnect()

        assert received == ["new"]
        assert broker.committed("g", "t") == {0: 2}

    @pytest.mark.asyncio
    async def test_from_beginning_replays_in_partition_order(self):
        broker = InMemoryBroker(default_partitions=2)
        for i in range(4):
            await broker.produce("t", i, key="same")
        received = []

        async def handler(message):
            received.append(message.value)

        consumer = broker.consumer("g")
        await consumer.subscribe("t", from_beginning=True)
        await consumer.run(handler)
        await drain(lambda: len(received) == 4)
        await consumer.disconnect()

        assert received == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_block_the_partition(self):
        broker = InMemoryBroker(default_partitions=1)
        received = []

        async def handler(message):
            if message.value == "bad":
                raise ValueError("boom")
            received.append(message.value)

        consumer = broker.consumer("g")
        await consumer.subscribe("t")
        await consumer.run(handler)
        await broker.produce("t", "bad")
        await broker.produce("t", "good")
        await drain(lambda: received)
        await consumer.disconnect()

        assert received == ["good"]

    @pytest.mark.asyncio
    async def test_group_resumes_from_committed_offset(self):
        broker = InMemoryBroker(default_partitions=1)
        received = []

        async def handler(message):
            received.append(message.value)

        first = broker.consumer("g")
        await first.subscribe("t")
        await first.run(handler)
        await broker.produce("t", 1)
        await drain(lambda: received == [1])
        await first.disconnect()

        await broker.produce("t", 2)
        second = broker.consumer("g")
        await second.subscribe("t", from_beginning=True)
        await second.run(handler)
        await drain(lambda: received == [1, 2])
        await second.disconnect()

        assert received == [1, 2]
