"""Publish one reminder dispatch request to Kafka.

Stands in for the external scheduler trigger; publishing the same request
twice is a handy way to watch the dedupe guard skip the second send.
"""

import argparse
import asyncio

from tutordesk.common.events import DISPATCH_EVENT_TYPES, DISPATCH_TOPIC, EventEnvelope, KafkaBus, dispatch_event


async def publish(event: EventEnvelope) -> None:
    bus = KafkaBus()
    try:
        await bus.publish(DISPATCH_TOPIC, event)
    finally:
        await bus.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a notification dispatch request.")
    parser.add_argument("--event-type", required=True, choices=DISPATCH_EVENT_TYPES)
    parser.add_argument("--teacher-id", type=int, default=None)
    parser.add_argument("--lesson-id", type=int, default=None)
    parser.add_argument("--student-id", type=int, default=None)
    parser.add_argument("--scheduled-for", default=None, help="ISO-8601 instant of the planned send")
    parser.add_argument("--summary-date", default=None, help="YYYY-MM-DD, defaults to the teacher's today/tomorrow")
    parser.add_argument("--minutes-before", type=int, default=None)
    parser.add_argument("--dedupe-key", default=None)
    args = parser.parse_args()

    event = dispatch_event(
        args.event_type,
        teacher_id=args.teacher_id,
        lesson_id=args.lesson_id,
        student_id=args.student_id,
        scheduled_for=args.scheduled_for,
        summary_date=args.summary_date,
        minutes_before=args.minutes_before,
        dedupe_key=args.dedupe_key,
    )
    asyncio.run(publish(event))
    print(event.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
