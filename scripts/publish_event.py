"""Publish one business event for webhook fan-out.

Useful for manual end-to-end checks and duplicate-event testing (`--event-id`
re-publishes an envelope with a fixed id).
"""

import argparse
import asyncio
import json
from pathlib import Path

from finhooks.common.bus import KafkaBus
from finhooks.common.events import EventEnvelope, EventType
from finhooks.services.publisher.service import EventPublisher


async def publish(bootstrap_servers: str, envelope: EventEnvelope) -> None:
    """Open producer, publish one envelope, close producer."""

    bus = KafkaBus(bootstrap_servers)
    try:
        await EventPublisher(bus, service_name="publish-cli").publish_envelope(envelope)
    finally:
        await bus.close()


def main() -> None:
    """Parse CLI args and publish one event envelope."""

    parser = argparse.ArgumentParser(description="Publish one webhook event envelope to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--type", required=True, choices=sorted(item.value for item in EventType))
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--event-id", default=None, help="Reuse an event id (duplicate testing)")
    parser.add_argument("--trace-id", default=None)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON data object")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON data file")
    args = parser.parse_args()

    if args.json_inline and args.json_file:
        raise SystemExit("Provide at most one of --json or --file")
    data = {}
    if args.json_inline:
        data = json.loads(args.json_inline)
    elif args.json_file:
        data = json.loads(Path(args.json_file).read_text())

    envelope = EventEnvelope.create(
        args.type, args.tenant_id, data, trace_id=args.trace_id, event_id=args.event_id
    )

    asyncio.run(publish(args.bootstrap_servers, envelope))
    print(f"Published event_id={envelope.id} type={envelope.type}")


if __name__ == "__main__":
    main()
