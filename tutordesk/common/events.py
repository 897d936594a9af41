"""Kafka transport for reminder dispatch requests.

An external scheduler decides *when* a reminder or summary is due and
publishes a dispatch request; the notification service consumes the topic and
decides *whether* to send. Redelivery is harmless because every send is
guarded by its dedupe key.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field, ValidationError

from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput
from tutordesk.common.logging import log_context, logger

DISPATCH_TOPIC = "notifications.dispatch"
DISPATCH_EVENT_TYPES = (
    "lesson_reminder.teacher",
    "lesson_reminder.student",
    "summary.today",
    "summary.tomorrow",
    "payment_reminder.sweep",
)


class EventEnvelope(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    payload: dict[str, Any]


def dispatch_event(event_type: str, **payload) -> EventEnvelope:
    """Build a dispatch request; keyed by lesson, else teacher, so one lesson stays on one partition."""

    if event_type not in DISPATCH_EVENT_TYPES:
        raise InvalidInput(f"unknown dispatch event type: {event_type}")
    body = {key: value for key, value in payload.items() if value is not None}
    aggregate = body.get("lesson_id") or body.get("teacher_id") or "sweep"
    return EventEnvelope(event_type=event_type, aggregate_id=str(aggregate), payload=body)


def decode_envelope(raw: bytes) -> EventEnvelope:
    try:
        return EventEnvelope(**json.loads(raw.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValidationError) as exc:
        raise InvalidInput(f"malformed event: {exc}") from exc


class KafkaBus:
    """Lazily started producer."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            event.model_dump_json().encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


async def handle_message(raw: bytes, handler: Callable[[EventEnvelope], Awaitable[Any]]) -> bool:
    """Decode one record and run the handler under its trace/teacher ids; False if it failed."""

    try:
        event = decode_envelope(raw)
    except InvalidInput as exc:
        logger.error("dispatch_dropped error=%s", exc)
        return False
    with log_context(trace_id=event.trace_id, teacher_id=event.payload.get("teacher_id"), lesson_id=event.payload.get("lesson_id")):
        logger.info("dispatch_received event_type=%s aggregate_id=%s", event.event_type, event.aggregate_id)
        try:
            await handler(event)
        except Exception as exc:
            logger.exception("dispatch_handler_error event_type=%s event_id=%s error=%s", event.event_type, event.event_id, exc)
            return False
    return True


async def consume_forever(topic: str, group_id: str, handler: Callable[[EventEnvelope], Awaitable[Any]]) -> None:
    """Consume `topic` until cancelled, committing after each polled batch.

    A failing record is logged and skipped; a broken connection is rebuilt
    after a short pause.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=50)
                for records in batches.values():
                    for record in records:
                        await handle_message(record.value, handler)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
