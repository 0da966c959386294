"""Kafka-style message transport used by stream processors.

``InMemoryBroker`` keeps an append-only log per topic partition. Keyed
messages land on ``hash(key) % partitions`` so one key always maps to one
partition; unkeyed messages are spread round-robin. A consumer group commits
the next offset per partition after its handler returns, and each partition
is consumed by its own task: delivery is FIFO within a partition and
concurrent across partitions.
"""

import asyncio
import copy
import hashlib
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from .models import StreamMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[StreamMessage], Awaitable[None]]


def _hash(value: str) -> int:
    return int(hashlib.md5(value.encode("utf-8")).hexdigest(), 16)


class Consumer(Protocol):
    async def subscribe(self, topic: str, from_beginning: bool = False) -> None:
        ...

    async def run(self, handler: MessageHandler) -> None:
        ...

    async def disconnect(self) -> None:
        ...


class MessageBroker(Protocol):
    async def create_topic(
        self,
        name: str,
        partitions: Optional[int] = None,
        replication_factor: Optional[int] = None,
    ) -> bool:
        ...

    async def produce(
        self,
        topic: str,
        value: Any,
        key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> StreamMessage:
        ...

    def consumer(self, group_id: str) -> Consumer:
        ...


@dataclass
class _Topic:
    name: str
    partitions: List[List[StreamMessage]]
    replication_factor: int = 1
    waiters: Dict[int, Set[asyncio.Event]] = field(default_factory=dict)
    produced: List[StreamMessage] = field(default_factory=list)
    round_robin: Any = None

    def __post_init__(self) -> None:
        self.waiters = {p: set() for p in range(len(self.partitions))}
        self.round_robin = itertools.cycle(range(len(self.partitions)))

    def partition_for(self, key: Optional[str]) -> int:
        if key is None:
            return next(self.round_robin)
        return _hash(key) % len(self.partitions)

    def notify(self, partition: int) -> None:
        for event in self.waiters[partition]:
            event.set()


class InMemoryBroker:
    def __init__(self, default_partitions: int = 3, default_replication_factor: int = 1):
        self.default_partitions = default_partitions
        self.default_replication_factor = default_replication_factor
        self._topics: Dict[str, _Topic] = {}
        self._offsets: Dict[Tuple[str, str, int], int] = {}

    async def create_topic(
        self,
        name: str,
        partitions: Optional[int] = None,
        replication_factor: Optional[int] = None,
    ) -> bool:
        """Create ``name`` unless it exists; returns whether a topic was created."""
        if name in self._topics:
            return False
        count = partitions or self.default_partitions
        self._topics[name] = _Topic(
            name=name,
            partitions=[[] for _ in range(count)],
            replication_factor=replication_factor or self.default_replication_factor,
        )
        logger.info("Created topic %s with %d partitions", name, count)
        return True

    async def _topic(self, name: str) -> _Topic:
        if name not in self._topics:
            await self.create_topic(name)
        return self._topics[name]

    async def produce(
        self,
        topic: str,
        value: Any,
        key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        partition: Optional[int] = None,
    ) -> StreamMessage:
        target = await self._topic(topic)
        if partition is None:
            partition = target.partition_for(key)
        log = target.partitions[partition]
        message = StreamMessage(
            key=key,
            value=copy.deepcopy(value),
            headers=dict(headers or {}),
            partition=partition,
            offset=len(log),
        )
        log.append(message)
        target.produced.append(message)
        target.notify(partition)
        return message

    def consumer(self, group_id: str) -> "InMemoryConsumer":
        return InMemoryConsumer(self, group_id)

    # inspection ------------------------------------------------------------

    def topics(self) -> Dict[str, int]:
        return {name: len(t.partitions) for name, t in self._topics.items()}

    def messages(self, topic: str) -> List[StreamMessage]:
        """Every message on ``topic`` in production order."""
        target = self._topics.get(topic)
        if target is None:
            return []
        return list(target.produced)

    def committed(self, group_id: str, topic: str) -> Dict[int, int]:
        return {
            partition: offset
            for (group, name, partition), offset in self._offsets.items()
            if group == group_id and name == topic
        }


class InMemoryConsumer:
    """One consumer-group member; assumes it is the group's only member."""

    def __init__(self, broker: InMemoryBroker, group_id: str):
        self.broker = broker
        self.group_id = group_id
        self._subscriptions: List[str] = []
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    async def subscribe(self, topic: str, from_beginning: bool = False) -> None:
        target = await self.broker._topic(topic)
        for partition, log in enumerate(target.partitions):
            position = (self.group_id, topic, partition)
            if position not in self.broker._offsets:
                self.broker._offsets[position] = 0 if from_beginning else len(log)
        if topic not in self._subscriptions:
            self._subscriptions.append(topic)

    async def run(self, handler: MessageHandler) -> None:
        """Start one delivery task per subscribed partition and return."""
        self._stopping = False
        for topic in self._subscriptions:
            target = self.broker._topics[topic]
            for partition in range(len(target.partitions)):
                self._tasks.append(
                    asyncio.create_task(
                        self._consume(target, partition, handler),
                        name=f"consume:{self.group_id}:{topic}:{partition}",
                    )
                )

    async def _consume(self, topic: _Topic, partition: int, handler: MessageHandler) -> None:
        wakeup = asyncio.Event()
        topic.waiters[partition].add(wakeup)
        position = (self.group_id, topic.name, partition)
        log = topic.partitions[partition]
        try:
            while not self._stopping:
                offset = self.broker._offsets[position]
                if offset < len(log):
                    try:
                        await handler(log[offset])
                    except Exception:
                        logger.exception(
                            "Handler failed for %s[%d]@%d", topic.name, partition, offset
                        )
                    self.broker._offsets[position] = offset + 1
                    continue
                wakeup.clear()
                await wakeup.wait()
        finally:
            topic.waiters[partition].discard(wakeup)

    async def disconnect(self) -> None:
        """Stop delivery; handlers already running are allowed to finish."""
        self._stopping = True
        for topic in self._subscriptions:
            target = self.broker._topics[topic]
            for partition in range(len(target.partitions)):
                target.notify(partition)
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks)
