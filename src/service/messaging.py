from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any

try:
    from aiokafka import AIOKafkaProducer
except ModuleNotFoundError:  # pragma: no cover
    AIOKafkaProducer = None

logger = logging.getLogger(__name__)

RUNLIST_EVENTS_TOPIC = "runlist_events"
MATCH_RESULTS_TOPIC = "buy_box_matches"


class KafkaBus:
    """Publishes runlist lifecycle and match events.

    Without a reachable broker, events land in per-topic in-process queues
    so callers and tests can still observe them.
    """

    def __init__(self, bootstrap_servers: str, client_id: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)

    async def connect(self) -> None:
        if AIOKafkaProducer is None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            self._producer = None

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
        for topic in list(self._queues):
            undelivered = self.drain(topic)
            if undelivered:
                logger.warning("Dropping %d undelivered %s events on shutdown", len(undelivered), topic)

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(RUNLIST_EVENTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception:
                pass
        await self._queues[topic].put(value)

    def drain(self, topic: str) -> list[dict[str, Any]]:
        """Pop every queued fallback event for `topic`."""
        queue = self._queues[topic]
        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return events
