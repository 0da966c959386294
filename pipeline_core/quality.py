"""Rolling data-quality scoring over stream traffic.

The monitor keeps the most recent messages and processing results in bounded
buffers. Quality rules are checked the moment a message arrives; the six
metrics (completeness, accuracy, consistency, timeliness, validity,
uniqueness) and their threshold alerts are recomputed on ``tick()``, which
``start()`` runs on a fixed interval.
"""

import asyncio
import json
import logging
import re
import threading
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from .events import EventBus, PipelineEvent
from .models import (
    AlertSeverity,
    DataQualityAlert,
    DataQualityMetric,
    MetricName,
    MetricThreshold,
    NumericRange,
    ProcessingResult,
    QualityCondition,
    QualityMonitorReport,
    QualityRule,
    StreamMessage,
    Trend,
    utcnow,
)
from .validation import to_number, type_name

logger = logging.getLogger(__name__)

METRIC_THRESHOLDS: Dict[MetricName, MetricThreshold] = {
    MetricName.COMPLETENESS: MetricThreshold(warning=90, critical=80),
    MetricName.ACCURACY: MetricThreshold(warning=95, critical=90),
    MetricName.CONSISTENCY: MetricThreshold(warning=95, critical=85),
    MetricName.TIMELINESS: MetricThreshold(warning=90, critical=80),
    MetricName.VALIDITY: MetricThreshold(warning=95, critical=90),
    MetricName.UNIQUENESS: MetricThreshold(warning=95, critical=90),
}

RECOMMENDATIONS: Dict[MetricName, str] = {
    MetricName.COMPLETENESS: "Improve data completeness by implementing required field validation",
    MetricName.ACCURACY: "Review data processing rules to improve accuracy",
    MetricName.CONSISTENCY: "Standardize data types and formats across all data sources",
    MetricName.TIMELINESS: "Optimize data pipeline to reduce processing latency",
    MetricName.VALIDITY: "Reject or repair malformed payloads before they enter the stream",
    MetricName.UNIQUENESS: "Deduplicate messages at the source or key them consistently",
}

# Relative change (percent) below which a metric counts as stable.
TREND_DEAD_BAND = 1.0


def default_quality_rules() -> List[QualityRule]:
    return [
        QualityRule(
            id="required-customer-id",
            name="Customer ID Required",
            type="completeness",
            field="customerId",
            severity="critical",
            description="Customer ID must be present",
        ),
        QualityRule(
            id="valid-email-format",
            name="Valid Email Format",
            type="validity",
            field="email",
            condition=QualityCondition(pattern=r"^[^@]+@[^@]+\.[^@]+$"),
            severity="warning",
            description="Email must be in valid format",
        ),
        QualityRule(
            id="positive-amount",
            name="Positive Amount",
            type="accuracy",
            field="amount",
            condition=QualityCondition(range=NumericRange(min=0, max=1_000_000)),
            severity="warning",
            description="Amount must be positive and reasonable",
        ),
    ]


def calculate_trend(previous: float, current: float) -> Trend:
    if previous == 0:
        if current > 0:
            return "up"
        return "stable" if current == 0 else "down"
    change = (current - previous) / previous * 100
    if abs(change) < TREND_DEAD_BAND:
        return "stable"
    return "up" if change > 0 else "down"


def rule_violation(message: StreamMessage, rule: QualityRule) -> Optional[Dict[str, Any]]:
    """Return the offending field/value when ``message`` breaks ``rule``."""
    data = message.value if isinstance(message.value, dict) else {}
    value = data.get(rule.field)

    if rule.type == "completeness":
        if value is None or value == "":
            return {"field": rule.field, "value": value}
    elif rule.type == "validity" and rule.condition.pattern:
        if not re.search(rule.condition.pattern, str(value or "")):
            return {"field": rule.field, "value": value}
    elif rule.type == "accuracy" and rule.condition.range:
        number = to_number(value)
        bounds = rule.condition.range
        if number is None or not bounds.min <= number <= bounds.max:
            return {"field": rule.field, "value": value}
    return None


def is_valid_payload(value: Any) -> bool:
    if value is None or value == "":
        return False
    if isinstance(value, (str, bytes)):
        try:
            json.loads(value)
        except ValueError:
            return False
    return True


def _dedupe_key(message: StreamMessage) -> str:
    if message.key:
        return message.key
    return json.dumps(message.value, sort_keys=True, default=str)


class DataQualityMonitor:
    def __init__(
        self,
        buffer_size: int = 1000,
        interval: float = 30.0,
        timeliness_threshold: float = 300.0,
        rules: Optional[Iterable[QualityRule]] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        max_alerts: int = 1000,
    ):
        self.interval = interval
        self.max_alerts = max_alerts
        self.timeliness_threshold = timeliness_threshold
        self.events = events or EventBus()
        self._clock = clock
        self._lock = threading.RLock()
        self._messages: Deque[StreamMessage] = deque(maxlen=buffer_size)
        self._results: Deque[ProcessingResult] = deque(maxlen=buffer_size)
        self._metrics: Dict[str, DataQualityMetric] = {}
        self._alerts: Dict[str, DataQualityAlert] = {}
        self._rules: Dict[str, QualityRule] = {}
        self._task: Optional[asyncio.Task] = None

        for rule in default_quality_rules() if rules is None else rules:
            self.add_quality_rule(rule)

    # wiring ----------------------------------------------------------------

    def observe(self, bus: EventBus) -> None:
        """Mirror every ``message_processed`` event on ``bus`` into the monitor."""
        bus.subscribe("message_processed", self._on_message_processed)

    def _on_message_processed(self, event: PipelineEvent) -> None:
        result = event.payload.get("result")
        if isinstance(result, ProcessingResult):
            self.process_message(result.original_message, result)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="quality-monitor")
        logger.info("Quality monitor started (interval %.1fs)", self.interval)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.tick()
            except Exception:
                logger.exception("Quality monitor tick failed")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Quality monitor stopped")

    # rules -----------------------------------------------------------------

    def add_quality_rule(self, rule: QualityRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule
        self.events.publish("rule_added", "quality_monitor", rule_id=rule.id)

    def remove_quality_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
        if removed:
            self.events.publish("rule_removed", "quality_monitor", rule_id=rule_id)
        return removed

    def get_quality_rules(self) -> List[QualityRule]:
        with self._lock:
            return list(self._rules.values())

    # ingestion -------------------------------------------------------------

    def process_message(
        self, message: StreamMessage, result: Optional[ProcessingResult] = None
    ) -> List[DataQualityAlert]:
        """Buffer ``message`` (and ``result``) and check it against every rule now."""
        with self._lock:
            self._messages.append(message)
            if result is not None:
                self._results.append(result)
            rules = list(self._rules.values())

        created = []
        for rule in rules:
            violation = rule_violation(message, rule)
            if violation is not None:
                created.append(self._rule_alert(rule, violation))
        return created

    def _rule_alert(self, rule: QualityRule, violation: Dict[str, Any]) -> DataQualityAlert:
        alert = DataQualityAlert(
            id=f"{rule.id}-{uuid.uuid4().hex[:12]}",
            severity=AlertSeverity.CRITICAL if rule.severity == "critical" else AlertSeverity.WARNING,
            metric=rule.name,
            message=f"{rule.description}: {violation['field']} = {violation['value']}",
            value=violation["value"],
            threshold=0.0,
            timestamp=self._clock(),
        )
        return self._store_alert(alert)

    def _store_alert(self, alert: DataQualityAlert) -> DataQualityAlert:
        with self._lock:
            self._alerts[alert.id] = alert
            self._evict_alerts()
        self.events.publish(
            "alert_created",
            "quality_monitor",
            alert_id=alert.id,
            severity=alert.severity.value,
            metric=alert.metric,
            message=alert.message,
        )
        return alert

    # metrics ---------------------------------------------------------------

    def tick(self) -> List[DataQualityMetric]:
        """Recompute metrics from the buffers and raise threshold alerts."""
        with self._lock:
            messages = list(self._messages)
            results = list(self._results)
        if not messages:
            return self.get_metrics()

        values = {
            MetricName.COMPLETENESS: self._completeness(messages),
            MetricName.ACCURACY: self._accuracy(results),
            MetricName.CONSISTENCY: self._consistency(messages),
            MetricName.TIMELINESS: self._timeliness(messages),
            MetricName.VALIDITY: self._validity(messages),
            MetricName.UNIQUENESS: self._uniqueness(messages),
        }
        now = self._clock()
        with self._lock:
            for name, value in values.items():
                previous = self._metrics.get(name.value)
                self._metrics[name.value] = DataQualityMetric(
                    name=name.value,
                    value=value,
                    threshold=METRIC_THRESHOLDS[name],
                    trend=calculate_trend(previous.value, value) if previous else "stable",
                    last_updated=now,
                )
            metrics = list(self._metrics.values())

        self.events.publish(
            "metrics_updated",
            "quality_monitor",
            metrics={m.name: m.value for m in metrics},
        )
        self._check_thresholds(metrics)
        return metrics

    @staticmethod
    def _completeness(messages: List[StreamMessage]) -> float:
        total = complete = 0
        for message in messages:
            if isinstance(message.value, dict):
                for value in message.value.values():
                    total += 1
                    if value is not None and value != "":
                        complete += 1
        return complete / total * 100 if total else 100.0

    @staticmethod
    def _accuracy(results: List[ProcessingResult]) -> float:
        if not results:
            return 100.0
        return sum(1 for r in results if r.success) / len(results) * 100

    @staticmethod
    def _consistency(messages: List[StreamMessage]) -> float:
        field_types: Dict[str, set] = {}
        for message in messages:
            if isinstance(message.value, dict):
                for field, value in message.value.items():
                    types = field_types.setdefault(field, set())
                    if value is not None:
                        types.add(type_name(value))
        if not field_types:
            return 100.0
        consistent = sum(1 for types in field_types.values() if len(types) <= 1)
        return consistent / len(field_types) * 100

    def _timeliness(self, messages: List[StreamMessage]) -> float:
        now = self._clock()
        timely = sum(
            1
            for m in messages
            if (now - m.timestamp).total_seconds() <= self.timeliness_threshold
        )
        return timely / len(messages) * 100

    @staticmethod
    def _validity(messages: List[StreamMessage]) -> float:
        valid = sum(1 for m in messages if is_valid_payload(m.value))
        return valid / len(messages) * 100

    @staticmethod
    def _uniqueness(messages: List[StreamMessage]) -> float:
        seen = set()
        duplicates = 0
        for message in messages:
            key = _dedupe_key(message)
            if key in seen:
                duplicates += 1
            else:
                seen.add(key)
        return (len(messages) - duplicates) / len(messages) * 100

    def _check_thresholds(self, metrics: List[DataQualityMetric]) -> None:
        for metric in metrics:
            threshold = metric.threshold
            if metric.value < threshold.critical:
                self._threshold_alert(metric, AlertSeverity.CRITICAL, threshold.critical)
            elif metric.value < threshold.warning:
                self._threshold_alert(metric, AlertSeverity.WARNING, threshold.warning)

    def _threshold_alert(
        self, metric: DataQualityMetric, severity: AlertSeverity, threshold: float
    ) -> Optional[DataQualityAlert]:
        with self._lock:
            for alert in self._alerts.values():
                if (
                    alert.metric == metric.name
                    and alert.severity == severity
                    and alert.resolved_at is None
                ):
                    return None
        alert = DataQualityAlert(
            id=f"{metric.name}-{severity.value}-{uuid.uuid4().hex[:12]}",
            severity=severity,
            metric=metric.name,
            message=(
                f"{metric.name} quality metric ({metric.value:.2f}%) is below "
                f"{severity.value} threshold ({threshold:g}%)"
            ),
            value=metric.value,
            threshold=threshold,
            timestamp=self._clock(),
        )
        logger.warning("%s", alert.message)
        return self._store_alert(alert)

    def get_metrics(self) -> List[DataQualityMetric]:
        with self._lock:
            return list(self._metrics.values())

    # alerts ----------------------------------------------------------------

    def _evict_alerts(self) -> None:
        """Evict resolved, then acknowledged, then the oldest open alerts past ``max_alerts``."""
        overflow = len(self._alerts) - self.max_alerts
        if overflow <= 0:
            return
        resolved = [i for i, a in self._alerts.items() if a.resolved_at is not None]
        acknowledged = [
            i for i, a in self._alerts.items() if a.acknowledged and a.resolved_at is None
        ]
        open_alerts = [i for i, a in self._alerts.items() if not a.acknowledged]
        for alert_id in (resolved + acknowledged + open_alerts)[:overflow]:
            del self._alerts[alert_id]

    def get_active_alerts(self) -> List[DataQualityAlert]:
        with self._lock:
            return [a for a in self._alerts.values() if not a.acknowledged]

    def get_all_alerts(self) -> List[DataQualityAlert]:
        with self._lock:
            return list(self._alerts.values())

    def acknowledge_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.acknowledged = True
        self.events.publish("alert_acknowledged", "quality_monitor", alert_id=alert_id)
        return True

    def resolve_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.resolved_at = self._clock()
            alert.acknowledged = True
        self.events.publish("alert_resolved", "quality_monitor", alert_id=alert_id)
        return True

    # reporting -------------------------------------------------------------

    def generate_report(self) -> QualityMonitorReport:
        metrics = self.get_metrics()
        alerts = self.get_all_alerts()
        overall = sum(m.value for m in metrics) / len(metrics) if metrics else 100.0

        recommendations = [
            RECOMMENDATIONS[MetricName(m.name)]
            for m in metrics
            if m.value < m.threshold.warning
        ]
        critical = [
            a for a in alerts if a.severity == AlertSeverity.CRITICAL and a.resolved_at is None
        ]
        if critical:
            recommendations.append(
                f"Address {len(critical)} critical data quality issues immediately"
            )

        return QualityMonitorReport(
            timestamp=self._clock(),
            overall_score=overall,
            metrics=metrics,
            alerts=alerts,
            trends={m.name: m.trend for m in metrics},
            recommendations=recommendations,
        )
