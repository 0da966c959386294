"""Tests for the validation engine: rules, dataset reports, cleansing and anomalies."""

import pytest

from pipeline_core.models import ValidationRule
from pipeline_core.validation import ValidationEngine, cleanse_date, to_number


@pytest.fixture
def engine():
    return ValidationEngine()


def rule(field, type_, message=None, **config):
    return ValidationRule(field=field, type=type_, config=config, message=message)


class TestValidateRecord:
    def test_required_rejects_none_and_empty_string(self, engine):
        result = engine.validate_record(
            {"name": "", "age": None},
            [rule("name", "required"), rule("age", "required")],
        )

        assert not result.is_valid
        assert result.errors == ["Field name is required", "Field age is required"]
        assert result.cleaned_data is None

    def test_valid_record_returns_cleaned_copy(self, engine):
        record = {"name": "Ada", "age": 36}
        result = engine.validate_record(record, [rule("name", "required")])

        assert result.is_valid
        assert result.errors == []
        assert result.cleaned_data == record
        assert result.cleaned_data is not record

    def test_numeric_string_is_coerced_with_warning(self, engine):
        result = engine.validate_record({"age": "42"}, [rule("age", "type", type="number")])

        assert result.is_valid
        assert result.cleaned_data["age"] == 42
        assert result.warnings == ["Field age converted from string to number"]

    def test_invalid_record_has_no_cleaned_data_even_after_coercion(self, engine):
        result = engine.validate_record(
            {"name": None, "age": "7"},
            [rule("name", "required"), rule("age", "type", type="number")],
        )

        assert not result.is_valid
        assert result.warnings == ["Field age converted from string to number"]
        assert result.cleaned_data is None

    def test_value_is_coerced_to_string(self, engine):
        result = engine.validate_record({"code": 7}, [rule("code", "type", type="string")])

        assert result.is_valid
        assert result.cleaned_data["code"] == "7"

    def test_type_mismatch_without_coercion_fails(self, engine):
        result = engine.validate_record({"tags": "a,b"}, [rule("tags", "type", type="array")])

        assert result.errors == ["Field tags must be of type array, got string"]

    def test_booleans_are_not_numbers(self, engine):
        result = engine.validate_record({"flag": True}, [rule("flag", "type", type="number")])
        assert not result.is_valid

    def test_type_skips_missing_values(self, engine):
        result = engine.validate_record({}, [rule("age", "type", type="number")])
        assert result.is_valid

    def test_range_bounds(self, engine):
        rules = [rule("amount", "range", min=0, max=100)]

        assert engine.validate_record({"amount": 50}, rules).is_valid
        assert engine.validate_record({"amount": -1}, rules).errors == [
            "Field amount must be at least 0"
        ]
        assert engine.validate_record({"amount": 101}, rules).errors == [
            "Field amount must be at most 100"
        ]
        # Non-numbers are the type rule's concern.
        assert engine.validate_record({"amount": "abc"}, rules).is_valid

    def test_pattern(self, engine):
        rules = [rule("email", "pattern", pattern=r"^[^@]+@[^@]+$")]

        assert engine.validate_record({"email": "a@b.io"}, rules).is_valid
        assert engine.validate_record({"email": "nope"}, rules).errors == [
            "Field email does not match required pattern"
        ]

    def test_enum(self, engine):
        rules = [rule("status", "enum", values=["new", "paid"])]

        assert engine.validate_record({"status": "paid"}, rules).is_valid
        assert engine.validate_record({"status": "void"}, rules).errors == [
            "Field status must be one of: new, paid"
        ]

    def test_length(self, engine):
        rules = [rule("code", "length", min=2, max=4)]

        assert engine.validate_record({"code": "abc"}, rules).is_valid
        assert engine.validate_record({"code": "a"}, rules).errors == [
            "Field code must be at least 2 characters"
        ]
        assert engine.validate_record({"code": "abcde"}, rules).errors == [
            "Field code must be at most 4 characters"
        ]

    def test_custom_message_overrides_default(self, engine):
        result = engine.validate_record(
            {"sku": None}, [rule("sku", "required", message="SKU missing")]
        )
        assert result.errors == ["SKU missing"]

    def test_custom_validator(self, engine):
        engine.register_custom_validator("even", lambda value, config: value % 2 == 0)
        rules = [rule("n", "custom", validator="even")]

        assert engine.validate_record({"n": 4}, rules).is_valid
        assert engine.validate_record({"n": 3}, rules).errors == [
            "Field n failed custom validation"
        ]

    def test_missing_custom_validator(self, engine):
        result = engine.validate_record({"n": 1}, [rule("n", "custom", validator="ghost")])
        assert result.errors == ["Custom validator ghost not found"]

    def test_validator_exception_becomes_error(self, engine):
        def explode(value, config):
            raise RuntimeError("kaboom")

        engine.register_custom_validator("explode", explode)
        result = engine.validate_record({"n": 1}, [rule("n", "custom", validator="explode")])

        assert result.errors == ["Validation error for field n: kaboom"]


class TestValidateDataset:
    def test_report_counts(self, engine):
        records = [
            {"id": 1, "email": "a@x.io"},
            {"id": 2, "email": None},
            {"id": 3, "email": "a@x.io"},
            {"id": 4, "email": ""},
        ]
        results, report = engine.validate_dataset(records, [rule("email", "required")])

        assert len(results) == 4
        assert report.total_records == 4
        assert report.valid_records == 2
        assert report.invalid_records == 2
        assert report.valid_records + report.invalid_records == report.total_records
        assert report.validation_rate == 50.0

        email = report.field_quality["email"]
        assert email.null_count == 1
        assert email.null_rate == 0.25
        assert email.unique_count == 2
        assert email.duplicate_count == 1
        assert email.valid_count == 2
        assert email.invalid_count == 2

        assert report.common_errors[0].error == "Field email is required"
        assert report.common_errors[0].count == 2
        assert report.common_errors[0].percentage == 50.0

    def test_empty_dataset(self, engine):
        results, report = engine.validate_dataset([], [rule("id", "required")])

        assert results == []
        assert report.total_records == 0
        assert report.validation_rate == 100.0
        assert report.field_quality == {}


class TestCleansing:
    def test_whitespace_is_normalized_everywhere(self, engine):
        cleaned = engine.cleanse_data([{"note": "  too   many\tspaces "}])
        assert cleaned == [{"note": "too many spaces"}]

    def test_named_rules_apply_by_field_keyword(self, engine):
        records = [
            {
                "contact_email": "  Ada@Example.COM ",
                "mobile": "+1 (555) 010-9999",
                "unit_price": "$1,234.50",
                "created_on": "2024-03-05 10:00:00",
                "name": "Ada",
            }
        ]

        cleaned = engine.cleanse_data(records, ["email", "phone", "currency", "date"])[0]

        assert cleaned["contact_email"] == "ada@example.com"
        assert cleaned["mobile"] == "+15550109999"
        assert cleaned["unit_price"] == 1234.5
        assert cleaned["created_on"] == "2024-03-05T10:00:00.000Z"
        assert cleaned["name"] == "Ada"

    def test_unrequested_rules_are_not_applied(self, engine):
        cleaned = engine.cleanse_data([{"email": "Ada@Example.com"}], ["phone"])
        assert cleaned[0]["email"] == "Ada@Example.com"

    def test_unparseable_values_pass_through(self, engine):
        cleaned = engine.cleanse_data([{"price": "n/a", "date": "someday"}], ["currency", "date"])
        assert cleaned == [{"price": "n/a", "date": "someday"}]

    def test_custom_cleansing_rule(self, engine):
        engine.register_cleansing_rule("upper", str.upper, ["code"])
        cleaned = engine.cleanse_data([{"country_code": "gb"}], ["upper"])
        assert cleaned == [{"country_code": "GB"}]

    def test_date_with_offset_is_normalized_to_utc(self):
        assert cleanse_date("2024-03-05T12:00:00+02:00") == "2024-03-05T10:00:00.000Z"


class TestAnomalies:
    VALUES = [10, 12, 11, 13, 9, 14, 100, 8]

    def test_iqr_outlier_and_statistics(self, engine):
        records = [{"id": i, "latency": v} for i, v in enumerate(self.VALUES)]

        report = engine.detect_anomalies(records, "latency")

        assert [r["latency"] for r in report.outliers] == [100]
        # |z| for 100 is about 2.6, under the 3 sigma cut-off.
        assert report.anomalies == []
        stats = report.statistics
        assert stats.q1 == 10
        assert stats.q3 == 14
        assert stats.iqr == 4
        assert stats.mean == pytest.approx(22.125)
        assert stats.median == 11.5
        assert stats.min == 8
        assert stats.max == 100

    def test_z_score_anomaly(self, engine):
        records = [{"v": 10} for _ in range(20)] + [{"v": 1000}]

        report = engine.detect_anomalies(records, "v")

        assert report.anomalies == [{"v": 1000}]
        assert report.outliers == [{"v": 1000}]

    def test_constant_values_have_no_anomalies(self, engine):
        report = engine.detect_anomalies([{"v": 5}] * 4, "v")

        assert report.outliers == []
        assert report.anomalies == []
        assert report.statistics.standard_deviation == 0

    def test_non_numeric_values_are_ignored(self, engine):
        report = engine.detect_anomalies([{"v": "x"}, {"v": None}, {"v": True}], "v")

        assert report.outliers == []
        assert report.statistics.mean == 0


@pytest.mark.parametrize(
    "value,expected",
    [("42", 42), (" 3.5 ", 3.5), ("abc", None), (None, None), (True, None), (7, 7)],
)
def test_to_number(value, expected):
    assert to_number(value) == expected
