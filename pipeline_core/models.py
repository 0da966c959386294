from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Record = Dict[str, Any]


# --- resilience -------------------------------------------------------------


class RetryConfig(BaseModel):
    """Exponential backoff policy; delays are in seconds."""

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    retryable_errors: List[str] = Field(default_factory=list)


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=60.0, ge=0)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreakerState(BaseModel):
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[datetime] = None
    next_attempt_time: Optional[datetime] = None


class ErrorStats(BaseModel):
    count: int = 0
    last_occurrence: Optional[datetime] = None


# --- data sources -----------------------------------------------------------


class DatabaseSourceSettings(BaseModel):
    type: Literal["database"] = "database"
    database: str
    timeout: float = 5.0
    pool_size: int = Field(default=5, ge=1)


class RateLimit(BaseModel):
    requests: int = Field(ge=1)
    window: float = Field(gt=0)


class ApiSourceSettings(BaseModel):
    type: Literal["api"] = "api"
    base_url: str
    endpoints: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float = 30.0
    rate_limit: Optional[RateLimit] = None


class FileSourceSettings(BaseModel):
    type: Literal["file"] = "file"
    path: str
    format: Literal["csv", "json"] = "json"
    encoding: str = "utf-8"
    delimiter: str = ","
    has_header: bool = True


class StreamSourceSettings(BaseModel):
    type: Literal["stream"] = "stream"
    url: str
    protocol: Literal["websocket", "sse", "kafka"] = "kafka"
    topic: Optional[str] = None
    partition: Optional[int] = None


SourceSettings = Annotated[
    Union[
        DatabaseSourceSettings,
        ApiSourceSettings,
        FileSourceSettings,
        StreamSourceSettings,
    ],
    Field(discriminator="type"),
]


class Credentials(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    token: Optional[str] = None


class DataSourceConfig(BaseModel):
    """Registration-time description of one extractable source."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    settings: SourceSettings
    credentials: Optional[Credentials] = None
    retry: Optional[RetryConfig] = None

    @property
    def type(self) -> str:
        return self.settings.type


class ExtractionMetadata(BaseModel):
    record_count: int
    execution_time: float
    source: str


class ExtractionResult(BaseModel):
    success: bool
    records: List[Record] = Field(default_factory=list)
    error: Optional[str] = None
    metadata: ExtractionMetadata


# --- validation -------------------------------------------------------------


RuleType = Literal["required", "type", "range", "pattern", "enum", "length", "custom"]


class ValidationRule(BaseModel):
    field: str
    type: RuleType
    config: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cleaned_data: Optional[Record] = None


class FieldQuality(BaseModel):
    null_count: int
    null_rate: float
    unique_count: int
    duplicate_count: int
    valid_count: int
    invalid_count: int


class CommonError(BaseModel):
    error: str
    count: int
    percentage: float


class DataQualityReport(BaseModel):
    """Dataset-level outcome of validating one batch of records."""

    total_records: int
    valid_records: int
    invalid_records: int
    validation_rate: float
    field_quality: Dict[str, FieldQuality] = Field(default_factory=dict)
    common_errors: List[CommonError] = Field(default_factory=list)


class FieldStatistics(BaseModel):
    mean: float = 0.0
    median: float = 0.0
    standard_deviation: float = 0.0
    min: float = 0.0
    max: float = 0.0
    q1: float = 0.0
    q3: float = 0.0
    iqr: float = 0.0


class AnomalyReport(BaseModel):
    field: str
    outliers: List[Record] = Field(default_factory=list)
    anomalies: List[Record] = Field(default_factory=list)
    statistics: FieldStatistics = Field(default_factory=FieldStatistics)


# --- ETL --------------------------------------------------------------------


FilterOperator = Literal[
    "equals", "not_equals", "greater_than", "less_than", "contains", "not_null"
]


class FilterCondition(BaseModel):
    field: str
    operator: FilterOperator
    value: Any = None


class MapStep(BaseModel):
    """Build each output record from source fields or computed values."""

    type: Literal["map"] = "map"
    mapping: Dict[str, Union[str, Callable[[Record], Any]]]
    description: Optional[str] = None


class FilterStep(BaseModel):
    type: Literal["filter"] = "filter"
    conditions: List[FilterCondition]
    description: Optional[str] = None


class Aggregation(BaseModel):
    field: str
    function: Literal["sum", "avg", "count", "min", "max"]


class AggregateStep(BaseModel):
    type: Literal["aggregate"] = "aggregate"
    group_by: List[str]
    aggregations: Dict[str, Aggregation]
    description: Optional[str] = None


class CustomStep(BaseModel):
    """Caller-supplied transform over the whole record list (sync or async)."""

    type: Literal["custom"] = "custom"
    transform: Callable[[List[Record]], Any]
    description: Optional[str] = None


TransformationStep = Annotated[
    Union[MapStep, FilterStep, AggregateStep, CustomStep],
    Field(discriminator="type"),
]


class SourceSpec(BaseModel):
    data_source_id: str
    query: Union[str, Dict[str, Any], None] = None
    batch_size: Optional[int] = Field(default=None, ge=1)


class Destination(BaseModel):
    table: str
    mode: Literal["insert", "upsert", "replace"] = "insert"
    key_columns: List[str] = Field(default_factory=lambda: ["id"])


class BatchValidationGate(BaseModel):
    enabled: bool = True
    rules: List[ValidationRule]
    on_failure: Literal["skip", "stop", "quarantine"] = "skip"


class ETLJobConfig(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    source: SourceSpec
    transformations: List[TransformationStep] = Field(default_factory=list)
    destination: Destination
    validation: Optional[BatchValidationGate] = None


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ETLJobStatus(BaseModel):
    job_id: str
    status: JobState = JobState.PENDING
    progress: int = 0
    current_step: Optional[str] = None
    start_time: Optional[datetime] = None


class ETLJobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    success: bool
    start_time: datetime
    end_time: datetime
    duration: float
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# --- streaming --------------------------------------------------------------


class Calculation(BaseModel):
    type: Literal["sum", "multiply", "concat"]
    fields: List[str]
    separator: str = ""


class TransformRule(BaseModel):
    type: Literal["transform"] = "transform"
    field_mappings: Dict[str, Union[str, Callable[[Record], Any]]] = Field(
        default_factory=dict
    )
    calculations: Dict[str, Calculation] = Field(default_factory=dict)
    description: Optional[str] = None


class FilterRule(BaseModel):
    """Gate for the rules that follow it; the payload itself is untouched."""

    type: Literal["filter"] = "filter"
    conditions: List[FilterCondition] = Field(default_factory=list)
    description: Optional[str] = None


class EnrichRule(BaseModel):
    type: Literal["enrich"] = "enrich"
    add_timestamp: bool = False
    add_metadata: bool = False
    external_lookup: bool = False
    description: Optional[str] = None


class AggregateRule(BaseModel):
    type: Literal["aggregate"] = "aggregate"
    config: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None


class CustomRule(BaseModel):
    type: Literal["custom"] = "custom"
    processor: Callable[[Record], Any]
    description: Optional[str] = None


ProcessingRule = Annotated[
    Union[TransformRule, FilterRule, EnrichRule, AggregateRule, CustomRule],
    Field(discriminator="type"),
]


class StreamValidationGate(BaseModel):
    enabled: bool = True
    rules: List[ValidationRule]
    on_failure: Literal["skip", "deadletter", "retry"] = "skip"


class BatchProcessing(BaseModel):
    enabled: bool = True
    batch_size: int = Field(default=100, ge=1)
    batch_timeout: float = Field(default=5.0, gt=0)


class StreamProcessorConfig(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    input_topic: str
    output_topic: Optional[str] = None
    consumer_group_id: str
    processing_rules: List[ProcessingRule] = Field(default_factory=list)
    validation: Optional[StreamValidationGate] = None
    dead_letter_topic: Optional[str] = None
    batch_processing: Optional[BatchProcessing] = None


class StreamMessage(BaseModel):
    key: Optional[str] = None
    value: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    partition: Optional[int] = None
    offset: Optional[int] = None

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ProcessingMetadata(BaseModel):
    processing_time: float
    rules_applied: List[str] = Field(default_factory=list)


class ProcessingResult(BaseModel):
    success: bool
    original_message: StreamMessage
    processed_message: Optional[StreamMessage] = None
    error: Optional[str] = None
    retry: bool = False
    metadata: Optional[ProcessingMetadata] = None


class StreamProcessorStats(BaseModel):
    messages_processed: int = 0
    messages_successful: int = 0
    messages_failed: int = 0
    average_processing_time: float = 0.0
    throughput_per_second: float = 0.0
    last_processed_at: Optional[datetime] = None
    uptime: float = 0.0


# --- quality monitoring -----------------------------------------------------


class MetricName(str, Enum):
    COMPLETENESS = "completeness"
    ACCURACY = "accuracy"
    CONSISTENCY = "consistency"
    TIMELINESS = "timeliness"
    VALIDITY = "validity"
    UNIQUENESS = "uniqueness"


Trend = Literal["up", "down", "stable"]


class MetricThreshold(BaseModel):
    warning: float
    critical: float


class DataQualityMetric(BaseModel):
    name: str
    value: float
    threshold: MetricThreshold
    trend: Trend = "stable"
    last_updated: datetime = Field(default_factory=utcnow)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DataQualityAlert(BaseModel):
    id: str
    severity: AlertSeverity
    metric: str
    message: str
    value: Any = None
    threshold: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    resolved_at: Optional[datetime] = None


class NumericRange(BaseModel):
    min: float
    max: float


class QualityCondition(BaseModel):
    pattern: Optional[str] = None
    range: Optional[NumericRange] = None


class QualityRule(BaseModel):
    id: str
    name: str
    type: Literal["completeness", "validity", "accuracy"]
    field: str
    condition: QualityCondition = Field(default_factory=QualityCondition)
    severity: Literal["warning", "critical"] = "warning"
    description: str = ""


class QualityMonitorReport(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    overall_score: float
    metrics: List[DataQualityMetric]
    alerts: List[DataQualityAlert]
    trends: Dict[str, Trend]
    recommendations: List[str]
