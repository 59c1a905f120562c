"""Replay one dead-lettered delivery back onto the delivery topic.

The delivery record is moved FAILED -> PENDING with a fresh attempt budget
before the task is re-published, so the worker's attempt guard accepts it.
"""

import argparse
import asyncio
import json
from uuid import uuid4

from aiokafka import AIOKafkaConsumer

from finhooks.common.bus import KafkaBus
from finhooks.common.config import settings
from finhooks.common.db import create_session_factory
from finhooks.common.deliveries import reset_for_replay
from finhooks.common.events import DELIVERY_TOPIC, DLQ_TOPIC, DeliveryTask


async def replay_once(
    bootstrap_servers: str,
    dsn: str,
    dlq_topic: str,
    target_delivery_id: str | None,
    target_event_id: str | None,
    dry_run: bool,
    timeout_seconds: int,
) -> int:
    """Find one matching dead letter and replay it (or dry-run)."""

    if not target_delivery_id and not target_event_id:
        raise ValueError("Provide --delivery-id or --event-id")

    consumer = AIOKafkaConsumer(
        dlq_topic,
        bootstrap_servers=bootstrap_servers,
        group_id=f"dlq-replay-{uuid4()}",
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    bus = KafkaBus(bootstrap_servers, service_name="dlq-replay")
    await consumer.start()
    try:
        deadline = asyncio.get_running_loop().time() + timeout_seconds
        while asyncio.get_running_loop().time() < deadline:
            results = await consumer.getmany(timeout_ms=1000, max_records=200)
            for _, messages in results.items():
                for msg in messages:
                    dead_letter = json.loads(msg.value.decode("utf-8"))
                    failed_message = dead_letter.get("failed_message")
                    if not isinstance(failed_message, dict):
                        continue
                    delivery_id = failed_message.get("deliveryRecordId")
                    event_id = (failed_message.get("envelope") or {}).get("id")
                    if target_delivery_id and delivery_id != target_delivery_id:
                        continue
                    if target_event_id and event_id != target_event_id:
                        continue

                    if dead_letter.get("replay_topic") != DELIVERY_TOPIC:
                        print("Matched dead letter is not replayable (no delivery replay_topic).")
                        return 2
                    print(f"Matched dead letter delivery_id={delivery_id} event_id={event_id}")
                    if dry_run:
                        print("Dry run only; no publish performed.")
                        return 0

                    session_factory = create_session_factory(dsn)
                    with session_factory() as db:
                        record = reset_for_replay(db, delivery_id)
                        db.commit()
                    task = DeliveryTask.model_validate({**failed_message, "attempt": record.attempt_count})
                    await bus.publish(DELIVERY_TOPIC, task, key=record.id)
                    print(f"Replayed delivery_id={record.id} with a fresh attempt budget")
                    return 0

        print("No matching dead letter found before timeout.")
        return 1
    finally:
        await consumer.stop()
        await bus.close()


def main() -> None:
    """CLI entrypoint for manual DLQ replay."""

    parser = argparse.ArgumentParser(description="Replay one failed webhook delivery from the DLQ.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--dsn", default=settings.postgres_dsn)
    parser.add_argument("--dlq-topic", default=DLQ_TOPIC)
    parser.add_argument("--delivery-id", default=None, help="Delivery record id to replay")
    parser.add_argument("--event-id", default=None, help="Event id to replay")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--timeout-seconds", type=int, default=30)
    args = parser.parse_args()

    rc = asyncio.run(
        replay_once(
            bootstrap_servers=args.bootstrap_servers,
            dsn=args.dsn,
            dlq_topic=args.dlq_topic,
            target_delivery_id=args.delivery_id,
            target_event_id=args.event_id,
            dry_run=args.dry_run,
            timeout_seconds=args.timeout_seconds,
        )
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
