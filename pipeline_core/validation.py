import json
import logging
import math
import re
import statistics
from collections import Counter
from datetime import timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from dateutil import parser as date_parser

from .models import (
    AnomalyReport,
    CommonError,
    DataQualityReport,
    FieldQuality,
    FieldStatistics,
    Record,
    ValidationResult,
    ValidationRule,
)

logger = logging.getLogger(__name__)

CustomValidator = Callable[[Any, Dict[str, Any]], bool]
Cleanser = Callable[[Any], Any]

DEFAULT_CLEANSING_KEYWORDS: Dict[str, List[str]] = {
    "email": ["email", "mail", "e_mail"],
    "phone": ["phone", "telephone", "mobile", "tel"],
    "currency": ["price", "cost", "amount", "value", "currency"],
    "date": ["date", "time", "created", "updated", "modified"],
}

TYPE_NAMES = {
    str: "string",
    bool: "boolean",
    int: "number",
    float: "number",
    dict: "object",
    list: "array",
    type(None): "null",
}

MAX_COMMON_ERRORS = 10
WHITESPACE = re.compile(r"\s+")

# Marks "no coerced value" since None is a legitimate coercion result.
_UNSET = object()


def type_name(value: Any) -> str:
    return TYPE_NAMES.get(type(value), type(value).__name__)


def is_number(value: Any) -> bool:
    """True for real ints and floats; bools and NaN are excluded."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and math.isnan(value))


def to_number(value: Any) -> Optional[float]:
    if is_number(value):
        return value
    if isinstance(value, bool) or value is None:
        return None
    text = str(value).strip()
    for cast in (int, float):
        try:
            number = cast(text)
        except (TypeError, ValueError):
            continue
        if is_number(number):
            return number
    return None


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


# --- default cleansing transforms -----------------------------------------


def cleanse_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower().strip()
    return value


def cleanse_phone(value: Any) -> Any:
    if isinstance(value, str):
        return re.sub(r"[^\d+]", "", value)
    return value


def cleanse_currency(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(re.sub(r"[$,\s]", "", value))
        except ValueError:
            return value
    return value


def cleanse_date(value: Any) -> Any:
    if isinstance(value, str):
        try:
            parsed = date_parser.parse(value)
        except (ValueError, OverflowError):
            return value
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        parsed = parsed.astimezone(timezone.utc)
        return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return value


class ValidationEngine:
    """Rule evaluation, cleansing and statistical checks over plain records.

    The engine keeps no per-run state: the only mutable parts are the
    registries of custom validators and cleansing rules, which are expected to
    be filled at startup.
    """

    def __init__(self) -> None:
        self._custom_validators: Dict[str, CustomValidator] = {}
        self._cleansing_rules: Dict[str, Tuple[Cleanser, List[str]]] = {}
        self.register_cleansing_rule("email", cleanse_email, DEFAULT_CLEANSING_KEYWORDS["email"])
        self.register_cleansing_rule("phone", cleanse_phone, DEFAULT_CLEANSING_KEYWORDS["phone"])
        self.register_cleansing_rule(
            "currency", cleanse_currency, DEFAULT_CLEANSING_KEYWORDS["currency"]
        )
        self.register_cleansing_rule("date", cleanse_date, DEFAULT_CLEANSING_KEYWORDS["date"])

    def register_custom_validator(self, name: str, validator: CustomValidator) -> None:
        self._custom_validators[name] = validator

    def register_cleansing_rule(
        self, name: str, cleanser: Cleanser, keywords: Optional[Iterable[str]] = None
    ) -> None:
        """Register ``cleanser``; it only touches fields containing one of ``keywords``."""
        self._cleansing_rules[name] = (cleanser, [k.lower() for k in keywords or [name]])

    # records ---------------------------------------------------------------

    def validate_record(
        self, record: Record, rules: Sequence[ValidationRule]
    ) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        cleaned = dict(record)

        for rule in rules:
            value = record.get(rule.field)
            try:
                rule_errors, rule_warnings, coerced = self._check(value, rule)
            except Exception as exc:
                rule_errors = [f"Validation error for field {rule.field}: {exc}"]
                rule_warnings, coerced = [], _UNSET
            errors.extend(rule_errors)
            warnings.extend(rule_warnings)
            if coerced is not _UNSET:
                cleaned[rule.field] = coerced

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            cleaned_data=None if errors else cleaned,
        )

    def _check(self, value: Any, rule: ValidationRule):
        errors: List[str] = []
        warnings: List[str] = []
        coerced: Any = _UNSET
        config = rule.config
        field = rule.field

        if rule.type == "required":
            if value is None or value == "":
                errors.append(rule.message or f"Field {field} is required")

        elif rule.type == "type":
            expected = config["type"]
            actual = type_name(value)
            if value is not None and actual != expected:
                number = to_number(value) if expected == "number" else None
                if number is not None:
                    coerced = number
                    warnings.append(f"Field {field} converted from {actual} to number")
                elif expected == "string":
                    coerced = str(value)
                    warnings.append(f"Field {field} converted to string")
                else:
                    errors.append(
                        rule.message
                        or f"Field {field} must be of type {expected}, got {actual}"
                    )

        elif rule.type == "range":
            if is_number(value):
                if config.get("min") is not None and value < config["min"]:
                    errors.append(rule.message or f"Field {field} must be at least {config['min']}")
                if config.get("max") is not None and value > config["max"]:
                    errors.append(rule.message or f"Field {field} must be at most {config['max']}")

        elif rule.type == "pattern":
            if isinstance(value, str) and not re.search(config["pattern"], value):
                errors.append(rule.message or f"Field {field} does not match required pattern")

        elif rule.type == "enum":
            allowed = list(config["values"])
            if value not in allowed:
                errors.append(
                    rule.message
                    or f"Field {field} must be one of: {', '.join(str(v) for v in allowed)}"
                )

        elif rule.type == "length":
            if isinstance(value, str):
                if config.get("min") is not None and len(value) < config["min"]:
                    errors.append(
                        rule.message or f"Field {field} must be at least {config['min']} characters"
                    )
                if config.get("max") is not None and len(value) > config["max"]:
                    errors.append(
                        rule.message or f"Field {field} must be at most {config['max']} characters"
                    )

        elif rule.type == "custom":
            name = config.get("validator")
            validator = self._custom_validators.get(name)
            if validator is None:
                errors.append(f"Custom validator {name} not found")
            elif not validator(value, config):
                errors.append(rule.message or f"Field {field} failed custom validation")

        return errors, warnings, coerced

    # datasets --------------------------------------------------------------

    def validate_dataset(
        self, records: Sequence[Record], rules: Sequence[ValidationRule]
    ) -> Tuple[List[ValidationResult], DataQualityReport]:
        fields: List[str] = []
        for record in records:
            for field in record:
                if field not in fields:
                    fields.append(field)

        null_counts: Counter = Counter()
        valid_counts: Counter = Counter()
        invalid_counts: Counter = Counter()
        distinct: Dict[str, set] = {field: set() for field in fields}
        error_counts: Counter = Counter()
        results: List[ValidationResult] = []

        for record in records:
            result = self.validate_record(record, rules)
            results.append(result)
            for field in fields:
                value = record.get(field)
                if value is None:
                    null_counts[field] += 1
                else:
                    distinct[field].add(_hashable(value))
                if result.is_valid:
                    valid_counts[field] += 1
                else:
                    invalid_counts[field] += 1
            error_counts.update(result.errors)

        total = len(records)
        valid = sum(1 for r in results if r.is_valid)
        field_quality = {
            field: FieldQuality(
                null_count=null_counts[field],
                null_rate=null_counts[field] / total if total else 0.0,
                unique_count=len(distinct[field]),
                duplicate_count=total - null_counts[field] - len(distinct[field]),
                valid_count=valid_counts[field],
                invalid_count=invalid_counts[field],
            )
            for field in fields
        }
        common_errors = [
            CommonError(error=error, count=count, percentage=count / total * 100)
            for error, count in sorted(error_counts.items(), key=lambda item: -item[1])
        ][:MAX_COMMON_ERRORS]

        report = DataQualityReport(
            total_records=total,
            valid_records=valid,
            invalid_records=total - valid,
            validation_rate=valid / total * 100 if total else 100.0,
            field_quality=field_quality,
            common_errors=common_errors,
        )
        logger.debug(
            "Validated %d records: %d valid, %d invalid", total, valid, total - valid
        )
        return results, report

    # cleansing -------------------------------------------------------------

    def cleanse_data(
        self, records: Sequence[Record], rule_names: Optional[Sequence[str]] = None
    ) -> List[Record]:
        """Normalize whitespace everywhere, then apply the named field-specific rules."""
        cleansers = [
            self._cleansing_rules[name]
            for name in rule_names or []
            if name in self._cleansing_rules
        ]
        cleaned_records = []
        for record in records:
            cleaned = {}
            for field, value in record.items():
                if isinstance(value, str):
                    value = WHITESPACE.sub(" ", value.strip())
                lowered = field.lower()
                for cleanser, keywords in cleansers:
                    if any(keyword in lowered for keyword in keywords):
                        value = cleanser(value)
                cleaned[field] = value
            cleaned_records.append(cleaned)
        return cleaned_records

    # anomalies -------------------------------------------------------------

    def detect_anomalies(self, records: Sequence[Record], field: str) -> AnomalyReport:
        """IQR outliers (1.5 x IQR fences) and z-score anomalies (|z| > 3) for ``field``."""
        values = sorted(r[field] for r in records if is_number(r.get(field)))
        if not values:
            return AnomalyReport(field=field)

        n = len(values)
        mean = sum(values) / n
        std = math.sqrt(sum((v - mean) ** 2 for v in values) / n)
        q1 = values[int(n * 0.25)]
        q3 = values[int(n * 0.75)]
        iqr = q3 - q1
        lower, upper = q1 - 1.5 * iqr, q3 + 1.5 * iqr

        outliers = [
            r for r in records if is_number(r.get(field)) and not lower <= r[field] <= upper
        ]
        anomalies = []
        if std > 0:
            anomalies = [
                r for r in records if is_number(r.get(field)) and abs(r[field] - mean) / std > 3
            ]

        return AnomalyReport(
            field=field,
            outliers=outliers,
            anomalies=anomalies,
            statistics=FieldStatistics(
                mean=mean,
                median=statistics.median(values),
                standard_deviation=std,
                min=values[0],
                max=values[-1],
                q1=q1,
                q3=q3,
                iqr=iqr,
            ),
        )

