import asyncio
import inspect
import json
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple, Union

from .connector import DataConnector
from .events import EventBus
from .models import (
    AggregateStep,
    BatchValidationGate,
    CustomStep,
    Destination,
    ETLJobConfig,
    ETLJobResult,
    ETLJobStatus,
    FilterCondition,
    FilterStep,
    JobState,
    MapStep,
    Record,
    utcnow,
)
from .resilience import ErrorHandler
from .validation import ValidationEngine, to_number
from .warehouse import Warehouse

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
QUARANTINE_SUFFIX = "_quarantine"


class JobNotFoundError(LookupError):
    code = "NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"ETL job {job_id} not found")
        self.job_id = job_id


class JobAlreadyRunningError(RuntimeError):
    def __init__(self, job_id: str):
        super().__init__(f"ETL job {job_id} is already running")
        self.job_id = job_id


class ExtractionError(RuntimeError):
    pass


class TransformationError(RuntimeError):
    pass


class ValidationGateError(RuntimeError):
    code = "VALIDATION_ERROR"


class _JobCancelled(Exception):
    pass


def match_condition(record: Record, condition: FilterCondition) -> bool:
    value = record.get(condition.field)
    operator = condition.operator
    if operator == "equals":
        return value == condition.value
    if operator == "not_equals":
        return value != condition.value
    if operator == "not_null":
        return value is not None
    if operator == "contains":
        return value is not None and str(condition.value) in str(value)
    if value is None:
        return False
    try:
        if operator == "greater_than":
            return value > condition.value
        if operator == "less_than":
            return value < condition.value
    except TypeError:
        return False
    raise ValueError(f"Unknown filter operator: {operator}")


def match_conditions(record: Record, conditions: Sequence[FilterCondition]) -> bool:
    return all(match_condition(record, condition) for condition in conditions)


def _numbers(values: List[Any], field: str) -> List[float]:
    numbers = []
    for value in values:
        number = to_number(value)
        if number is None:
            raise ValueError(f"Cannot aggregate non-numeric value {value!r} in {field}")
        numbers.append(number)
    return numbers


def apply_map(records: List[Record], step: MapStep) -> List[Record]:
    mapped = []
    for record in records:
        row = {}
        for target, source in step.mapping.items():
            row[target] = source(record) if callable(source) else record.get(source)
        mapped.append(row)
    return mapped


def apply_filter(records: List[Record], step: FilterStep) -> List[Record]:
    return [record for record in records if match_conditions(record, step.conditions)]


def apply_aggregate(records: List[Record], step: AggregateStep) -> List[Record]:
    groups: Dict[Tuple, List[Record]] = {}
    for record in records:
        key = tuple(record.get(field) for field in step.group_by)
        groups.setdefault(key, []).append(record)

    results = []
    for key, members in groups.items():
        row = dict(zip(step.group_by, key))
        for target, aggregation in step.aggregations.items():
            values = [m.get(aggregation.field) for m in members]
            values = [v for v in values if v is not None]
            if aggregation.function == "count":
                row[target] = len(values)
                continue
            numbers = _numbers(values, aggregation.field)
            if aggregation.function == "sum":
                row[target] = sum(numbers)
            elif aggregation.function == "avg":
                row[target] = sum(numbers) / len(numbers) if numbers else None
            elif aggregation.function == "min":
                row[target] = min(numbers) if numbers else None
            elif aggregation.function == "max":
                row[target] = max(numbers) if numbers else None
        results.append(row)
    return results


class ETLPipeline:
    """Runs registered extract-transform-validate-load jobs.

    Each job moves through ``pending -> running -> completed | failed |
    cancelled``. Extraction and transformation happen in memory; the load
    phase (quarantine writes, deletes for ``replace``, inserts and updates)
    runs inside one warehouse transaction, retried as a whole under the
    ``database`` retry policy.
    """

    def __init__(
        self,
        connector: DataConnector,
        warehouse: Warehouse,
        validator: Optional[ValidationEngine] = None,
        events: Optional[EventBus] = None,
        error_handler: Optional[ErrorHandler] = None,
        history_limit: int = 100,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.connector = connector
        self.warehouse = warehouse
        self.validator = validator or ValidationEngine()
        self.events = events or EventBus()
        self.error_handler = error_handler or ErrorHandler(self.events)
        self.history_limit = history_limit
        self.default_batch_size = default_batch_size
        self._jobs: Dict[str, ETLJobConfig] = {}
        self._statuses: Dict[str, ETLJobStatus] = {}
        self._running: set = set()
        self._history: Dict[str, Deque[ETLJobResult]] = {}

    # registry --------------------------------------------------------------

    def register_job(self, config: Union[ETLJobConfig, Dict[str, Any]]) -> ETLJobConfig:
        if not isinstance(config, ETLJobConfig):
            config = ETLJobConfig.model_validate(config)
        self._jobs[config.id] = config
        logger.info("Registered ETL job %s (%s)", config.id, config.name)
        self.events.publish("job_registered", "etl_pipeline", job_id=config.id)
        return config

    def get_jobs(self) -> List[ETLJobConfig]:
        return list(self._jobs.values())

    def remove_job(self, job_id: str) -> bool:
        self.cancel_job(job_id)
        removed = self._jobs.pop(job_id, None) is not None
        if removed:
            self.events.publish("job_removed", "etl_pipeline", job_id=job_id)
        return removed

    def get_job_status(self, job_id: str) -> Optional[ETLJobStatus]:
        status = self._statuses.get(job_id)
        return status.model_copy() if status else None

    def get_job_history(self, job_id: str, limit: int = 10) -> List[ETLJobResult]:
        history = list(self._history.get(job_id, []))
        return history[-limit:] if limit > 0 else history

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    def cancel_job(self, job_id: str) -> bool:
        """Mark a running job cancelled.

        The job stops at its next phase boundary; a load that has already
        opened its transaction still commits or rolls back on its own.
        """
        if job_id not in self._running:
            return False
        self._statuses[job_id].status = JobState.CANCELLED
        logger.info("ETL job %s cancelled", job_id)
        self.events.publish("job_cancelled", "etl_pipeline", job_id=job_id)
        return True

    # execution -------------------------------------------------------------

    async def execute_job(self, job_id: str) -> ETLJobResult:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job_id in self._running:
            raise JobAlreadyRunningError(job_id)

        self._running.add(job_id)
        start_time = utcnow()
        status = ETLJobStatus(
            job_id=job_id,
            status=JobState.RUNNING,
            progress=0,
            current_step="Initializing",
            start_time=start_time,
        )
        self._statuses[job_id] = status
        logger.info("Starting ETL job %s", job_id)
        self.events.publish("job_started", "etl_pipeline", job_id=job_id)

        warnings: List[str] = []
        try:
            self._progress(status, "Extracting data", 10)
            records = await self._extract(job)
            processed = len(records)

            self._progress(status, "Transforming data", 30)
            records = await self._transform(records, job)

            skipped, quarantined = 0, []
            if job.validation and job.validation.enabled:
                self._progress(status, "Validating data", 60)
                records, skipped, quarantined, gate_warnings = self._validate(
                    records, job.validation
                )
                warnings.extend(gate_warnings)

            self._progress(status, "Loading data", 80)
            inserted, updated = await self.error_handler.execute_with_resilience(
                "database",
                lambda: asyncio.to_thread(self._load, job, records, quarantined),
            )
        except _JobCancelled:
            result = self._result(
                job_id,
                start_time,
                success=False,
                errors=[f"ETL job {job_id} was cancelled"],
                warnings=warnings,
            )
            self._finish(job_id, result)
            return result
        except Exception as exc:
            if status.status != JobState.CANCELLED:
                status.status = JobState.FAILED
            logger.error("ETL job %s failed: %s", job_id, exc)
            result = self._result(
                job_id, start_time, success=False, errors=[str(exc)], warnings=warnings
            )
            self._finish(job_id, result)
            self.events.publish(
                "job_failed", "etl_pipeline", job_id=job_id, error=str(exc)
            )
            return result
        except asyncio.CancelledError:
            status.status = JobState.CANCELLED
            logger.warning("ETL job %s task cancelled during %s", job_id, status.current_step)
            self._finish(
                job_id,
                self._result(
                    job_id,
                    start_time,
                    success=False,
                    errors=[f"ETL job {job_id} was cancelled"],
                    warnings=warnings,
                ),
            )
            self.events.publish("job_cancelled", "etl_pipeline", job_id=job_id)
            raise

        if status.status == JobState.CANCELLED:
            warnings.append("Job was cancelled during load; the load transaction committed")
        else:
            status.status = JobState.COMPLETED
        status.progress = 100
        status.current_step = "Completed"

        result = self._result(
            job_id,
            start_time,
            success=True,
            records_processed=processed,
            records_inserted=inserted,
            records_updated=updated,
            records_skipped=skipped,
            records_failed=len(quarantined),
            warnings=warnings,
        )
        self._finish(job_id, result)
        logger.info(
            "ETL job %s completed: %d processed, %d inserted, %d updated",
            job_id,
            processed,
            inserted,
            updated,
        )
        self.events.publish(
            "job_completed",
            "etl_pipeline",
            job_id=job_id,
            records_processed=processed,
            records_inserted=inserted,
            records_updated=updated,
            duration=result.duration,
        )
        return result

    def _progress(self, status: ETLJobStatus, step: str, progress: int) -> None:
        if status.status == JobState.CANCELLED:
            raise _JobCancelled()
        status.current_step = step
        status.progress = progress
        self.events.publish(
            "job_progress",
            "etl_pipeline",
            job_id=status.job_id,
            progress=progress,
            current_step=step,
        )

    def _result(self, job_id: str, start_time: datetime, **fields: Any) -> ETLJobResult:
        end_time = utcnow()
        return ETLJobResult(
            job_id=job_id,
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
            **fields,
        )

    def _finish(self, job_id: str, result: ETLJobResult) -> None:
        history = self._history.setdefault(job_id, deque(maxlen=self.history_limit))
        history.append(result)
        self._running.discard(job_id)

    async def _extract(self, job: ETLJobConfig) -> List[Record]:
        result = await self.connector.extract_data(
            job.source.data_source_id,
            job.source.query,
            limit=job.source.batch_size or self.default_batch_size,
        )
        if not result.success:
            raise ExtractionError(f"Data extraction failed: {result.error}")
        return list(result.records)

    async def _transform(self, records: List[Record], job: ETLJobConfig) -> List[Record]:
        for index, step in enumerate(job.transformations):
            try:
                if isinstance(step, MapStep):
                    records = apply_map(records, step)
                elif isinstance(step, FilterStep):
                    records = apply_filter(records, step)
                elif isinstance(step, AggregateStep):
                    records = apply_aggregate(records, step)
                elif isinstance(step, CustomStep):
                    transformed = step.transform(records)
                    if inspect.isawaitable(transformed):
                        transformed = await transformed
                    records = list(transformed)
            except Exception as exc:
                raise TransformationError(
                    f"Transformation step {index + 1} ({step.type}) failed: {exc}"
                ) from exc
        return records

    def _validate(self, records: List[Record], gate: BatchValidationGate):
        valid: List[Record] = []
        quarantined: List[Tuple[Record, List[str]]] = []
        warnings: List[str] = []
        skipped = 0

        for record in records:
            outcome = self.validator.validate_record(record, gate.rules)
            if outcome.is_valid:
                valid.append(outcome.cleaned_data or record)
                continue
            reasons = ", ".join(outcome.errors)
            if gate.on_failure == "stop":
                raise ValidationGateError(f"Data validation failed: {reasons}")
            if gate.on_failure == "quarantine":
                quarantined.append((record, outcome.errors))
                warnings.append(f"Record quarantined: {reasons}")
            else:
                skipped += 1
                warnings.append(f"Record skipped: {reasons}")
        return valid, skipped, quarantined, warnings

    def _load(
        self,
        job: ETLJobConfig,
        records: List[Record],
        quarantined: List[Tuple[Record, List[str]]],
    ) -> Tuple[int, int]:
        destination: Destination = job.destination
        inserted = updated = 0
        with self.warehouse.transaction() as tx:
            for record, errors in quarantined:
                tx.insert(
                    destination.table + QUARANTINE_SUFFIX,
                    {
                        "job_id": job.id,
                        "errors": json.dumps(errors),
                        "record": json.dumps(record, default=str),
                        "quarantined_at": utcnow().isoformat(),
                    },
                )
            if destination.mode == "replace":
                tx.delete_all(destination.table)
            for record in records:
                if destination.mode == "upsert" and tx.exists(
                    destination.table, record, destination.key_columns
                ):
                    tx.update(destination.table, record, destination.key_columns)
                    updated += 1
                else:
                    tx.insert(destination.table, record)
                    inserted += 1
        return inserted, updated
