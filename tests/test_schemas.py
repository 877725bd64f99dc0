from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from toolsmith.errors import ValidationFailed
from toolsmith.schemas import IbanGenerateQuery, TemplateField, encode_cursor, parse_cursor


def test_cursor_ids_are_normalised_to_lowercase() -> None:
    record_id = str(uuid.uuid4())
    cursor = encode_cursor(datetime(2025, 10, 11, 12, 0, tzinfo=timezone.utc), record_id)
    timestamp_text, _ = cursor.split(",")

    lowered = parse_cursor(cursor)
    uppered = parse_cursor(f"{timestamp_text},{record_id.upper()}")

    assert uppered == lowered
    assert uppered[1] == record_id


def test_cursor_rejects_malformed_ids() -> None:
    with pytest.raises(ValidationFailed):
        parse_cursor("2025-10-11T12:00:00.000000Z,not-a-uuid")


@pytest.mark.parametrize("seed", ["abc\n", "abc\r\n", "a b"])
def test_seed_must_be_entirely_safe_characters(seed: str) -> None:
    with pytest.raises(ValidationError):
        IbanGenerateQuery.model_validate({"country": "DE", "seed": seed})


@pytest.mark.parametrize("key", ["title\n", "Title", "1title"])
def test_field_keys_must_match_whole_value(key: str) -> None:
    with pytest.raises(ValidationError):
        TemplateField.model_validate({"key": key, "type": "text", "label": "Title"})


def test_field_key_accepts_snake_case() -> None:
    field = TemplateField.model_validate({"key": "steps_2", "type": "text", "label": "Steps"})
    assert field.key == "steps_2"
