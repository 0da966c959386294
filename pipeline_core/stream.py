import asyncio
import inspect
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from .broker import Consumer, MessageBroker
from .etl import match_conditions
from .events import EventBus
from .models import (
    AggregateRule,
    CustomRule,
    EnrichRule,
    FilterRule,
    ProcessingMetadata,
    ProcessingResult,
    Record,
    StreamMessage,
    StreamProcessorConfig,
    StreamProcessorStats,
    TransformRule,
    utcnow,
)
from .resilience import ErrorHandler
from .validation import ValidationEngine

logger = logging.getLogger(__name__)


class ProcessorAlreadyRunningError(RuntimeError):
    def __init__(self, processor_id: str):
        super().__init__(f"Stream processor {processor_id} is already running")
        self.processor_id = processor_id


def decode_value(value: Any) -> Any:
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value) if value.strip() else {}
    return value


class StreamProcessor:
    """Consumes one input topic, validates and transforms each message, and re-publishes it.

    With batch processing enabled, messages are buffered until either
    ``batch_size`` messages have arrived or ``batch_timeout`` seconds have passed
    since the first buffered one, whichever comes first. Both triggers go
    through ``_flush_batch``, which holds a lock and takes the whole buffer, so
    a batch is flushed exactly once.
    """

    def __init__(
        self,
        config: Union[StreamProcessorConfig, Dict[str, Any]],
        broker: MessageBroker,
        validator: Optional[ValidationEngine] = None,
        events: Optional[EventBus] = None,
        error_handler: Optional[ErrorHandler] = None,
        topic_partitions: int = 3,
        topic_replication_factor: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not isinstance(config, StreamProcessorConfig):
            config = StreamProcessorConfig.model_validate(config)
        self.config = config
        self.broker = broker
        self.validator = validator or ValidationEngine()
        self.events = events or EventBus()
        self.error_handler = error_handler or ErrorHandler(self.events)
        self.topic_partitions = topic_partitions
        self.topic_replication_factor = topic_replication_factor
        self._clock = clock

        self._consumer: Optional[Consumer] = None
        self._running = False
        self._started_at = clock()
        self._stats = StreamProcessorStats()
        self._buffer: List[StreamMessage] = []
        self._flush_lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None

    @property
    def id(self) -> str:
        return self.config.id

    def is_running(self) -> bool:
        return self._running

    # lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            raise ProcessorAlreadyRunningError(self.id)
        try:
            await self._ensure_topics()
            consumer = self.broker.consumer(self.config.consumer_group_id)
            await consumer.subscribe(self.config.input_topic, from_beginning=False)
            await consumer.run(self.handle_message)
        except Exception as exc:
            logger.error("Stream processor %s failed to start: %s", self.id, exc)
            self.events.publish(
                "processor_error", "stream_processor", processor_id=self.id, error=str(exc)
            )
            raise

        self._consumer = consumer
        self._running = True
        self._started_at = self._clock()
        logger.info("Stream processor %s started on %s", self.id, self.config.input_topic)
        self.events.publish("processor_started", "stream_processor", processor_id=self.id)

    async def stop(self) -> None:
        """Flush any buffered batch, then release the consumer."""
        if not self._running:
            return
        try:
            await self._flush_batch()
            if self._consumer is not None:
                await self._consumer.disconnect()
                self._consumer = None
            # Handlers that were mid-flight during disconnect may have buffered more.
            await self._flush_batch()
        except Exception as exc:
            logger.error("Stream processor %s failed to stop cleanly: %s", self.id, exc)
            self.events.publish(
                "processor_error", "stream_processor", processor_id=self.id, error=str(exc)
            )
            raise
        finally:
            self._cancel_timer()

        self._running = False
        logger.info("Stream processor %s stopped", self.id)
        self.events.publish("processor_stopped", "stream_processor", processor_id=self.id)

    async def _ensure_topics(self) -> None:
        topics = [self.config.input_topic, self.config.output_topic, self.config.dead_letter_topic]
        for topic in topics:
            if topic:
                await self.broker.create_topic(
                    topic, self.topic_partitions, self.topic_replication_factor
                )

    def update_config(self, **changes: Any) -> StreamProcessorConfig:
        """Apply ``changes`` to the live config; the next message sees them.

        Topic and consumer-group changes only take effect on the next start.
        """
        merged = {**self.config.model_dump(), **changes}
        self.config = StreamProcessorConfig.model_validate(merged)
        self.events.publish(
            "config_updated",
            "stream_processor",
            processor_id=self.id,
            fields=sorted(changes),
        )
        return self.config

    def get_stats(self) -> StreamProcessorStats:
        uptime = self._clock() - self._started_at
        processed = self._stats.messages_processed
        return self._stats.model_copy(
            update={
                "uptime": uptime,
                "throughput_per_second": processed / uptime if uptime > 0 else 0.0,
            }
        )

    # consumption -----------------------------------------------------------

    async def handle_message(self, message: StreamMessage) -> Optional[ProcessingResult]:
        """Entry point for every delivered message.

        Returns the result for immediately processed messages and ``None``
        when the message was buffered for a batch.
        """
        started = self._clock()
        try:
            message = message.model_copy(update={"value": decode_value(message.value)})
        except ValueError as exc:
            result = ProcessingResult(
                success=False,
                original_message=message,
                error=f"Invalid message payload: {exc}",
            )
            self._record(result, self._clock() - started)
            return result

        batch = self.config.batch_processing
        if batch and batch.enabled:
            await self._buffer_message(message)
            return None

        result = await self.process_message(message)
        self._record(result, self._clock() - started)
        return result

    async def _buffer_message(self, message: StreamMessage) -> None:
        batch = self.config.batch_processing
        self._buffer.append(message)
        if len(self._buffer) >= batch.batch_size:
            await self._flush_batch()
        elif self._timer is None:
            self._timer = asyncio.create_task(self._flush_after(batch.batch_timeout))

    async def _flush_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._flush_batch()

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _flush_batch(self) -> List[ProcessingResult]:
        async with self._flush_lock:
            self._cancel_timer()
            if not self._buffer:
                return []
            batch, self._buffer = self._buffer, []

            started = self._clock()
            results = [await self.process_message(message) for message in batch]
            elapsed = self._clock() - started
            for result in results:
                self._record(result, elapsed / len(batch))

        self.events.publish(
            "batch_processed",
            "stream_processor",
            processor_id=self.id,
            batch_size=len(batch),
            successful=sum(1 for r in results if r.success),
            processing_time=elapsed,
        )
        return results

    def _record(self, result: ProcessingResult, elapsed: float) -> None:
        stats = self._stats
        stats.messages_processed += 1
        if result.success:
            stats.messages_successful += 1
        else:
            stats.messages_failed += 1
        stats.average_processing_time += (
            elapsed - stats.average_processing_time
        ) / stats.messages_processed
        stats.last_processed_at = utcnow()

        self.events.publish(
            "message_processed",
            "stream_processor",
            processor_id=self.id,
            result=result,
            processing_time=elapsed,
        )
        if not result.success:
            self.events.publish(
                "processing_error",
                "stream_processor",
                processor_id=self.id,
                error=result.error,
            )

    # processing ------------------------------------------------------------

    async def process_message(self, message: StreamMessage) -> ProcessingResult:
        config = self.config
        started = self._clock()
        rules_applied: List[str] = []

        def metadata() -> ProcessingMetadata:
            return ProcessingMetadata(
                processing_time=self._clock() - started, rules_applied=list(rules_applied)
            )

        try:
            payload = message.value
            gate = config.validation
            if gate and gate.enabled:
                record = payload if isinstance(payload, dict) else {}
                outcome = self.validator.validate_record(record, gate.rules)
                if not outcome.is_valid:
                    return await self._validation_failure(message, outcome.errors, metadata)
                if outcome.cleaned_data is not None:
                    payload = outcome.cleaned_data

            for rule in config.processing_rules:
                if isinstance(rule, FilterRule):
                    rules_applied.append(rule.type)
                    if not match_conditions(payload, rule.conditions):
                        break
                    continue
                payload = await self._apply_rule(payload, rule)
                rules_applied.append(rule.type)

            processed = message.model_copy(update={"value": payload, "timestamp": utcnow()})
            if config.output_topic:
                await self._publish(
                    config.output_topic, payload, key=message.key, headers=message.headers
                )
        except Exception as exc:
            logger.warning("Stream processor %s failed on message: %s", self.id, exc)
            return ProcessingResult(
                success=False, original_message=message, error=str(exc), metadata=metadata()
            )

        return ProcessingResult(
            success=True,
            original_message=message,
            processed_message=processed,
            metadata=metadata(),
        )

    async def _publish(self, topic: str, value: Any, key=None, headers=None) -> None:
        await self.error_handler.execute_with_resilience(
            f"stream:{topic}",
            lambda: self.broker.produce(topic, value, key=key, headers=headers),
            self.error_handler.get_retry_config("stream"),
        )

    async def _validation_failure(
        self, message: StreamMessage, errors: List[str], metadata
    ) -> ProcessingResult:
        reasons = ", ".join(errors)
        policy = self.config.validation.on_failure

        if policy == "deadletter":
            topic = self.config.dead_letter_topic
            if topic:
                envelope = {
                    "original_message": message.model_dump(mode="json"),
                    "errors": errors,
                    "timestamp": utcnow().isoformat(),
                }
                await self._publish(topic, envelope, key=message.key)
            else:
                logger.warning(
                    "Stream processor %s has no dead-letter topic; dropping message", self.id
                )
            return ProcessingResult(
                success=False,
                original_message=message,
                error=f"Validation failed, sent to dead letter: {reasons}",
                metadata=metadata(),
            )
        if policy == "retry":
            return ProcessingResult(
                success=False,
                original_message=message,
                error=f"Validation failed, retry needed: {reasons}",
                retry=True,
                metadata=metadata(),
            )
        return ProcessingResult(
            success=False,
            original_message=message,
            error=f"Validation failed: {reasons}",
            metadata=metadata(),
        )

    async def _apply_rule(self, payload: Record, rule) -> Any:
        if isinstance(rule, TransformRule):
            return self._transform(payload, rule)
        if isinstance(rule, EnrichRule):
            return self._enrich(payload, rule)
        if isinstance(rule, AggregateRule):
            # Stateful windowed aggregation is left to custom rules.
            return payload
        if isinstance(rule, CustomRule):
            result = rule.processor(payload)
            if inspect.isawaitable(result):
                result = await result
            return result
        raise ValueError(f"Unknown processing rule: {rule!r}")

    @staticmethod
    def _transform(payload: Record, rule: TransformRule) -> Record:
        transformed = dict(payload)
        for target, source in rule.field_mappings.items():
            transformed[target] = source(payload) if callable(source) else payload.get(source)

        for target, calculation in rule.calculations.items():
            values = [payload.get(f) for f in calculation.fields]
            if calculation.type == "sum":
                total = 0
                for value in values:
                    total += 0 if value is None else value
                transformed[target] = total
            elif calculation.type == "multiply":
                product = 1
                for value in values:
                    product *= 1 if value is None else value
                transformed[target] = product
            elif calculation.type == "concat":
                transformed[target] = calculation.separator.join(
                    "" if value is None else str(value) for value in values
                )
        return transformed

    def _enrich(self, payload: Record, rule: EnrichRule) -> Record:
        enriched = dict(payload)
        now = utcnow().isoformat()
        if rule.add_timestamp:
            enriched["processedAt"] = now
        if rule.add_metadata:
            enriched["_metadata"] = {
                "processorId": self.config.id,
                "processorName": self.config.name,
                "processedAt": now,
            }
        if rule.external_lookup:
            enriched["_enriched"] = True
        return enriched
