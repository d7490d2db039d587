"""Tests for boundary validation helpers."""

import pytest

from kiro_memory.exceptions import InvalidProjectError, ValidationError
from kiro_memory.validation import (
    MAX_BATCH_IDS,
    clamp_int,
    is_valid_project,
    validate_ids,
    validate_project,
    validate_string_list,
    validate_summary_field,
    validate_text,
    validate_title,
)


class TestProjectNames:
    @pytest.mark.parametrize("name", ["acme", "my-app", "org/repo", "@scope/pkg", "v1.2", "My Project"])
    def test_accepted(self, name):
        assert is_valid_project(name)
        assert validate_project(name) == name

    @pytest.mark.parametrize("name", ["", None, 42, "../etc", "a..b", "semi;colon", "x" * 201])
    def test_rejected(self, name):
        assert not is_valid_project(name)
        with pytest.raises(InvalidProjectError) as exc_info:
            validate_project(name)
        assert exc_info.value.field == "project"


class TestTextFields:
    def test_title_required(self):
        with pytest.raises(ValidationError):
            validate_title(None)
        with pytest.raises(ValidationError):
            validate_title("   ")

    def test_title_length(self):
        assert validate_title("t" * 500) == "t" * 500
        with pytest.raises(ValidationError) as exc_info:
            validate_title("t" * 501)
        assert "max 500" in exc_info.value.message

    def test_optional_text(self):
        assert validate_text(None) is None
        assert validate_text("") == ""
        with pytest.raises(ValidationError):
            validate_text(123)
        with pytest.raises(ValidationError):
            validate_text("x" * 100_001, "narrative")

    def test_summary_field_limit(self):
        assert validate_summary_field("ok", "learned") == "ok"
        with pytest.raises(ValidationError) as exc_info:
            validate_summary_field("x" * 50_001, "learned")
        assert exc_info.value.field == "learned"

    def test_string_lists(self):
        assert validate_string_list(None, "files") is None
        assert validate_string_list(["a", 1], "files") == ["a", "1"]
        with pytest.raises(ValidationError):
            validate_string_list("a.py", "files")


class TestIds:
    def test_valid(self):
        assert validate_ids([3, 1, 2]) == [3, 1, 2]
        assert len(validate_ids(range(1, MAX_BATCH_IDS + 1))) == MAX_BATCH_IDS

    @pytest.mark.parametrize("ids", [[], [0], [-1], ["1"], [1.5], [True], list(range(1, MAX_BATCH_IDS + 2))])
    def test_invalid(self, ids):
        with pytest.raises(ValidationError):
            validate_ids(ids)


class TestClampInt:
    def test_parses_strings(self):
        assert clamp_int("15", 10, 1, 100) == 15

    @pytest.mark.parametrize("value", [None, "", "abc", "0", "101", 3.7e9])
    def test_falls_back_to_default(self, value):
        assert clamp_int(value, 10, 1, 100) == 10
