"""
Unit tests for dynamic field typing.

Tests cover:
- FieldType parsing
- Value construction per type
- Column mapping (exactly one populated column)
"""

from datetime import date

import pytest

from dbaas.hera_server.schema.types import (
    ALLOWED_STATUS_TRANSITIONS,
    VALUE_COLUMNS,
    BooleanValue,
    DateValue,
    FieldType,
    JsonValue,
    NumberValue,
    TextValue,
    TransactionStatus,
    field_value_from_columns,
    field_value_to_columns,
    make_field_value,
)


class TestFieldType:
    """Tests for FieldType."""

    def test_from_str(self):
        assert FieldType.from_str("number") is FieldType.NUMBER
        assert FieldType.from_str("TEXT") is FieldType.TEXT

    def test_from_str_invalid(self):
        with pytest.raises(ValueError, match="Invalid field type"):
            FieldType.from_str("integer")

    def test_column(self):
        """Each type owns one storage column."""
        assert FieldType.JSON.column == "field_value_json"
        assert len(VALUE_COLUMNS) == 5


class TestMakeFieldValue:
    """Tests for make_field_value()."""

    def test_text(self):
        assert make_field_value(FieldType.TEXT, "gold") == TextValue("gold")

    def test_number(self):
        """Integers are widened to float."""
        value = make_field_value(FieldType.NUMBER, 5000)
        assert value == NumberValue(5000.0)

    def test_number_rejects_bool(self):
        """Booleans are not numbers."""
        with pytest.raises(ValueError):
            make_field_value(FieldType.NUMBER, True)

    def test_number_rejects_string(self):
        with pytest.raises(ValueError):
            make_field_value(FieldType.NUMBER, "5000")

    def test_boolean(self):
        assert make_field_value(FieldType.BOOLEAN, False) == BooleanValue(False)

    def test_boolean_rejects_int(self):
        with pytest.raises(ValueError):
            make_field_value(FieldType.BOOLEAN, 1)

    def test_date(self):
        """ISO dates and datetimes are accepted."""
        assert make_field_value(FieldType.DATE, "2024-03-01") == DateValue("2024-03-01")
        assert make_field_value(FieldType.DATE, "2024-03-01T10:00:00Z").value.startswith(
            "2024-03-01"
        )
        assert make_field_value(FieldType.DATE, date(2024, 3, 1)) == DateValue("2024-03-01")

    def test_date_rejects_garbage(self):
        with pytest.raises(ValueError):
            make_field_value(FieldType.DATE, "first of March")

    def test_json(self):
        assert make_field_value(FieldType.JSON, {"tier": 2}) == JsonValue({"tier": 2})

    def test_json_rejects_unserializable(self):
        with pytest.raises(ValueError):
            make_field_value(FieldType.JSON, {1, 2})


class TestColumns:
    """Tests for column mapping."""

    def test_exactly_one_column_populated(self):
        columns = field_value_to_columns(NumberValue(12.5))
        populated = [name for name, value in columns.items() if value is not None]
        assert populated == ["field_value_number"]

    def test_boolean_stored_as_int(self):
        columns = field_value_to_columns(BooleanValue(True))
        assert columns["field_value_boolean"] == 1

    def test_json_from_columns(self):
        columns = field_value_to_columns(JsonValue({"a": [1, 2]}))
        value = field_value_from_columns(FieldType.JSON, columns)
        assert value == JsonValue({"a": [1, 2]})


class TestStatusTransitions:
    """Tests for transaction status transitions."""

    def test_terminal_states(self):
        assert not ALLOWED_STATUS_TRANSITIONS[TransactionStatus.COMPLETED]
        assert not ALLOWED_STATUS_TRANSITIONS[TransactionStatus.VOIDED]

    def test_draft_can_complete(self):
        assert TransactionStatus.COMPLETED in ALLOWED_STATUS_TRANSITIONS[TransactionStatus.DRAFT]
