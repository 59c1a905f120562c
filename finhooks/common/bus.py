"""Message bus adapters: Kafka for deployments, in-memory for tests/local runs.

Both follow the same discipline: `publish` returns only once the broker has
confirmed the write, and a consumed message is acknowledged only after its
handler returned. A handler that raises leaves the message unacknowledged so it
is redelivered; handlers own the decision to drop (ack) bad input.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Protocol

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import TopicPartition
from pydantic import BaseModel

from finhooks.common.events import DLQ_TOPIC, DeadLetter
from finhooks.common.logging import logger
from finhooks.common.metrics import dlq_published_total

Handler = Callable[[dict[str, Any]], Awaitable[None]]

REDELIVERY_PAUSE_SECONDS = 1.0


def encode_value(value: BaseModel | dict[str, Any]) -> bytes:
    """Serialize a message body; models with a wire form use it."""

    if isinstance(value, BaseModel):
        to_wire = getattr(value, "to_wire", None)
        payload = to_wire() if to_wire is not None else value.model_dump(mode="json")
    else:
        payload = value
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_value(raw: bytes | None) -> dict[str, Any] | None:
    """Parse a message body; None when it is not a JSON object."""

    if raw is None:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


class MessageBus(Protocol):
    """Broker operations the webhook services depend on."""

    async def publish(self, topic: str, value: BaseModel | dict[str, Any], key: str | None = None) -> None: ...

    async def consume(
        self,
        handler: Handler,
        group_id: str,
        topics: Iterable[str] | None = None,
        pattern: str | None = None,
    ) -> None: ...

    async def close(self) -> None: ...


class KafkaBus:
    """Kafka adapter with confirmed publishes and manual offset commits."""

    def __init__(self, bootstrap_servers: str, prefetch: int = 10, service_name: str = "finhooks") -> None:
        self.bootstrap_servers = bootstrap_servers
        self.prefetch = prefetch
        self.service_name = service_name
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                acks="all",
                enable_idempotence=True,
            )
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, value: BaseModel | dict[str, Any], key: str | None = None) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            encode_value(value),
            key=key.encode("utf-8") if key is not None else None,
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def _make_consumer(
        self, group_id: str, topics: Iterable[str] | None, pattern: str | None
    ) -> AIOKafkaConsumer:
        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            metadata_max_age_ms=30_000,
        )
        if pattern is not None:
            consumer.subscribe(pattern=pattern)
        else:
            consumer.subscribe(topics=list(topics or []))
        await consumer.start()
        return consumer

    async def _dead_letter_undecodable(self, msg, group_id: str) -> None:
        raw = msg.value.decode("utf-8", errors="replace") if msg.value is not None else None
        await self.publish(
            DLQ_TOPIC,
            DeadLetter(
                reason="message is not a JSON object",
                error_type="UNDECODABLE",
                source=group_id,
                replay_topic=None,
                failed_message=raw,
            ),
        )
        dlq_published_total.labels(service=self.service_name, topic=DLQ_TOPIC, error_type="UNDECODABLE").inc()

    async def _process(self, msg, handler: Handler, group_id: str) -> bool:
        """Run one message; True means it may be acknowledged."""

        try:
            payload = decode_value(msg.value)
            if payload is None:
                logger.warning(
                    "undecodable_message topic=%s group=%s offset=%s", msg.topic, group_id, msg.offset
                )
                await self._dead_letter_undecodable(msg, group_id)
                return True
            await handler(payload)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "handler_error topic=%s group=%s partition=%s offset=%s error=%s",
                msg.topic,
                group_id,
                msg.partition,
                msg.offset,
                exc,
            )
            return False

    async def consume(
        self,
        handler: Handler,
        group_id: str,
        topics: Iterable[str] | None = None,
        pattern: str | None = None,
    ) -> None:
        """Continuously consume and hand decoded messages to `handler`.

        Up to `prefetch` messages run concurrently. Offsets are committed per
        partition up to the first failed message, and the consumer seeks back to
        that message so it is redelivered.
        """

        while True:
            consumer = None
            try:
                consumer = await self._make_consumer(group_id, topics, pattern)
                while True:
                    results = await consumer.getmany(timeout_ms=500, max_records=self.prefetch)
                    batch = [(tp, msg) for tp, messages in results.items() for msg in messages]
                    if not batch:
                        continue
                    outcomes = await asyncio.gather(*(self._process(msg, handler, group_id) for _, msg in batch))

                    acked: dict[TopicPartition, int] = {}
                    failed: dict[TopicPartition, int] = {}
                    for (tp, msg), ok in zip(batch, outcomes):
                        if tp in failed:
                            continue
                        if ok:
                            acked[tp] = msg.offset + 1
                        else:
                            failed[tp] = msg.offset
                    commits = {**acked, **failed}
                    if commits:
                        await consumer.commit(commits)
                    for tp, offset in failed.items():
                        consumer.seek(tp, offset)
                    if failed:
                        await asyncio.sleep(REDELIVERY_PAUSE_SECONDS)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("consumer_loop_error group=%s error=%s", group_id, exc)
                await asyncio.sleep(2)
            finally:
                if consumer is not None:
                    await consumer.stop()
                await asyncio.sleep(0)


@dataclass
class BusMessage:
    topic: str
    key: str | None
    value: dict[str, Any]
    offset: int


class InMemoryBus:
    """Single-process bus with per-group cursors.

    Every published message is kept in `messages`. A group's cursor only moves
    past a message after its handler returned, so a raising handler sees the
    same message again on the next drain.
    """

    def __init__(self, poll_interval_seconds: float = 0.05) -> None:
        self.messages: list[BusMessage] = []
        self.poll_interval_seconds = poll_interval_seconds
        self._cursors: dict[str, int] = {}
        self.closed = False

    async def publish(self, topic: str, value: BaseModel | dict[str, Any], key: str | None = None) -> None:
        if self.closed:
            raise RuntimeError("bus is closed")
        self.messages.append(BusMessage(topic, key, json.loads(encode_value(value)), len(self.messages)))

    def published(self, topic: str) -> list[dict[str, Any]]:
        return [message.value for message in self.messages if message.topic == topic]

    @staticmethod
    def _matcher(topics: Iterable[str] | None, pattern: str | None) -> Callable[[str], bool]:
        if pattern is not None:
            compiled = re.compile(pattern)
            return lambda topic: compiled.match(topic) is not None
        wanted = set(topics or [])
        return lambda topic: topic in wanted

    async def _drain_once(
        self, handler: Handler, group_id: str, topics: Iterable[str] | None, pattern: str | None
    ) -> tuple[int, bool]:
        matches = self._matcher(topics, pattern)
        processed = 0
        cursor = self._cursors.get(group_id, 0)
        while cursor < len(self.messages):
            message = self.messages[cursor]
            if matches(message.topic):
                try:
                    await handler(message.value)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error(
                        "handler_error topic=%s group=%s offset=%s error=%s",
                        message.topic,
                        group_id,
                        message.offset,
                        exc,
                    )
                    self._cursors[group_id] = cursor
                    return processed, True
                processed += 1
            cursor += 1
            self._cursors[group_id] = cursor
        return processed, False

    async def drain(
        self,
        handler: Handler,
        group_id: str,
        topics: Iterable[str] | None = None,
        pattern: str | None = None,
    ) -> int:
        """Process every pending message for `group_id` once; returns the count handled."""

        processed, _ = await self._drain_once(handler, group_id, topics, pattern)
        return processed

    async def consume(
        self,
        handler: Handler,
        group_id: str,
        topics: Iterable[str] | None = None,
        pattern: str | None = None,
    ) -> None:
        while True:
            _, failed = await self._drain_once(handler, group_id, topics, pattern)
            await asyncio.sleep(REDELIVERY_PAUSE_SECONDS if failed else self.poll_interval_seconds)

    async def close(self) -> None:
        self.closed = True


def build_bus(settings) -> MessageBus:
    """Pick the bus adapter once at process start."""

    if settings.bus_backend == "kafka":
        return KafkaBus(
            settings.kafka_bootstrap_servers,
            prefetch=settings.consumer_prefetch,
            service_name=settings.service_name,
        )
    if settings.bus_backend == "memory":
        return InMemoryBus()
    raise ValueError(f"unknown bus backend: {settings.bus_backend}")
