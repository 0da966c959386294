import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

from .broker import InMemoryBroker
from .config import settings
from .connector import DataConnector, UnsupportedSourceTypeError
from .etl import ETLPipeline, JobAlreadyRunningError, JobNotFoundError
from .events import EventBus, EventRecorder
from .logging_config import configure_logging, log_event
from .models import (
    CircuitBreakerConfig,
    ETLJobConfig,
    ETLJobResult,
    StreamProcessorConfig,
    ValidationRule,
)
from .quality import DataQualityMonitor
from .resilience import ErrorHandler
from .stream import ProcessorAlreadyRunningError, StreamProcessor
from .validation import ValidationEngine
from .warehouse import create_warehouse

logger = logging.getLogger(__name__)


class ValidateRequest(BaseModel):
    records: List[Dict[str, Any]]
    rules: List[ValidationRule]


class PublishRequest(BaseModel):
    value: Any
    key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


events = EventBus()
recorder = EventRecorder(settings.event_history_size)
events.subscribe_all(log_event)
events.subscribe_all(recorder)

error_handler = ErrorHandler(
    events,
    CircuitBreakerConfig(
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout=settings.circuit_reset_timeout,
    ),
)
validator = ValidationEngine()
connector = DataConnector(events, error_handler)
warehouse = create_warehouse(backend=settings.warehouse_backend, path=settings.warehouse_path)
pipeline = ETLPipeline(
    connector,
    warehouse,
    validator,
    events,
    error_handler,
    history_limit=settings.job_history_limit,
    default_batch_size=settings.default_batch_size,
)
broker = InMemoryBroker(settings.topic_partitions, settings.topic_replication_factor)
monitor = DataQualityMonitor(
    buffer_size=settings.monitor_buffer_size,
    interval=settings.monitor_interval,
    timeliness_threshold=settings.timeliness_threshold,
    events=events,
    max_alerts=settings.monitor_max_alerts,
)
monitor.observe(events)
processors: Dict[str, StreamProcessor] = {}
background_jobs: Set["asyncio.Task[ETLJobResult]"] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_format)
    await monitor.start()
    logger.info("Pipeline core started with %s warehouse", settings.warehouse_backend)
    yield
    for task in list(background_jobs):
        task.cancel()
    await asyncio.gather(*background_jobs, return_exceptions=True)
    for processor in processors.values():
        await processor.stop()
    await monitor.stop()
    await connector.close_all_connections()


app = FastAPI(
    title="Pipeline Core",
    version="0.1.0",
    description="Ingestion core: connectors, batch ETL, stream processing and quality monitoring.",
    lifespan=lifespan,
)


def _invalid(exc: ValidationError) -> HTTPException:
    detail = exc.errors(include_url=False, include_context=False, include_input=False)
    return HTTPException(status_code=422, detail=detail)


@app.get("/health")
async def health() -> dict:
    return {
        "status": "ok",
        "sources": len(connector.get_connection_status()),
        "jobs": len(pipeline.get_jobs()),
        "processors": sum(1 for p in processors.values() if p.is_running()),
        "warehouse": warehouse.metrics(),
    }


# sources -------------------------------------------------------------------


@app.post("/sources")
async def register_source(payload: Dict[str, Any]) -> dict:
    try:
        config = await connector.register_data_source(payload)
    except UnsupportedSourceTypeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValidationError as exc:
        raise _invalid(exc) from exc
    except Exception as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"registered": config.id, "type": config.type}


@app.get("/sources/status")
async def source_status() -> dict:
    return {"sources": connector.get_connection_status()}


# ETL -----------------------------------------------------------------------


def _job_summary(job: ETLJobConfig) -> dict:
    return {
        "id": job.id,
        "name": job.name,
        "source": job.source.data_source_id,
        "destination": job.destination.model_dump(),
        "steps": [step.type for step in job.transformations],
        "status": pipeline.get_job_status(job.id),
    }


@app.get("/etl/jobs")
async def list_jobs() -> dict:
    return {"jobs": [_job_summary(job) for job in pipeline.get_jobs()]}


@app.post("/etl/jobs")
async def register_job(payload: Dict[str, Any]) -> dict:
    try:
        job = pipeline.register_job(payload)
    except ValidationError as exc:
        raise _invalid(exc) from exc
    return {"registered": job.id}


def _background_job_done(task: "asyncio.Task[ETLJobResult]") -> None:
    background_jobs.discard(task)
    if task.cancelled():
        logger.info("Background ETL job task cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background ETL job raised: %s", exc)
        return
    result = task.result()
    logger.info(
        "Background ETL job %s finished: %s",
        result.job_id,
        "completed" if result.success else "failed",
    )


@app.post("/etl/jobs/{job_id}/run")
async def run_job(job_id: str, async_mode: bool = False) -> dict:
    if job_id not in {job.id for job in pipeline.get_jobs()}:
        raise HTTPException(status_code=404, detail=f"ETL job {job_id} not found")
    if async_mode:
        if pipeline.is_running(job_id):
            raise HTTPException(status_code=409, detail=f"ETL job {job_id} is already running")
        task = asyncio.create_task(pipeline.execute_job(job_id))
        background_jobs.add(task)
        task.add_done_callback(_background_job_done)
        return {"status": "scheduled"}
    try:
        result = await pipeline.execute_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"status": "completed" if result.success else "failed", "result": result}


@app.get("/etl/jobs/{job_id}/status")
async def job_status(job_id: str) -> dict:
    status = pipeline.get_job_status(job_id)
    if status is None and job_id not in {job.id for job in pipeline.get_jobs()}:
        raise HTTPException(status_code=404, detail=f"ETL job {job_id} not found")
    return {"status": status}


@app.get("/etl/jobs/{job_id}/history")
async def job_history(job_id: str, limit: int = 10) -> dict:
    return {"history": pipeline.get_job_history(job_id, limit)}


@app.post("/etl/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> dict:
    return {"cancelled": pipeline.cancel_job(job_id)}


@app.get("/warehouse/snapshot")
async def warehouse_snapshot(table: str, limit: int = 20) -> dict:
    return {"rows": warehouse.snapshot(table, limit), "metrics": warehouse.metrics()}


# streams -------------------------------------------------------------------


@app.get("/streams")
async def list_streams() -> dict:
    return {
        "processors": [
            {
                "id": p.id,
                "name": p.config.name,
                "input_topic": p.config.input_topic,
                "output_topic": p.config.output_topic,
                "running": p.is_running(),
            }
            for p in processors.values()
        ],
        "topics": broker.topics(),
    }


@app.post("/streams")
async def start_stream(payload: Dict[str, Any]) -> dict:
    try:
        config = StreamProcessorConfig.model_validate(payload)
    except ValidationError as exc:
        raise _invalid(exc) from exc
    existing = processors.get(config.id)
    if existing is not None and existing.is_running():
        raise HTTPException(
            status_code=409, detail=f"Stream processor {config.id} is already running"
        )

    processor = StreamProcessor(
        config,
        broker,
        validator,
        events,
        error_handler,
        topic_partitions=settings.topic_partitions,
        topic_replication_factor=settings.topic_replication_factor,
    )
    try:
        await processor.start()
    except ProcessorAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    processors[config.id] = processor
    return {"started": config.id}


@app.get("/streams/{processor_id}/stats")
async def stream_stats(processor_id: str) -> dict:
    processor = processors.get(processor_id)
    if processor is None:
        raise HTTPException(status_code=404, detail=f"Stream processor {processor_id} not found")
    return {"running": processor.is_running(), "stats": processor.get_stats()}


@app.post("/streams/{processor_id}/stop")
async def stop_stream(processor_id: str) -> dict:
    processor = processors.get(processor_id)
    if processor is None:
        raise HTTPException(status_code=404, detail=f"Stream processor {processor_id} not found")
    await processor.stop()
    return {"stopped": processor_id}


@app.post("/topics/{topic}/messages")
async def publish_message(topic: str, request: PublishRequest) -> dict:
    message = await broker.produce(topic, request.value, key=request.key, headers=request.headers)
    return {"topic": topic, "partition": message.partition, "offset": message.offset}


# quality -------------------------------------------------------------------


@app.get("/quality/report")
async def quality_report() -> dict:
    return {"report": monitor.generate_report()}


@app.get("/quality/alerts")
async def quality_alerts(active_only: bool = False) -> dict:
    alerts = monitor.get_active_alerts() if active_only else monitor.get_all_alerts()
    return {"alerts": alerts}


@app.post("/quality/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: str) -> dict:
    if not monitor.acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return {"acknowledged": alert_id}


@app.post("/quality/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: str) -> dict:
    if not monitor.resolve_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return {"resolved": alert_id}


# validation / resilience / events -----------------------------------------


@app.post("/validation/validate")
async def validate_records(request: ValidateRequest) -> dict:
    results, report = validator.validate_dataset(request.records, request.rules)
    return {"results": results, "report": report}


@app.get("/resilience/stats")
async def resilience_stats() -> dict:
    return {
        "errors": error_handler.get_all_error_stats(),
        "circuit_breakers": error_handler.get_circuit_breaker_states(),
    }


@app.get("/events")
async def recent_events(name: Optional[str] = None, limit: int = 50) -> dict:
    return {"events": recorder.query(name=name, limit=limit)}
