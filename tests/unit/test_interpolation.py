"""
Tests for template interpolation.
"""
import pytest

from ensemble_engine.core.exceptions import ConfigurationError
from ensemble_engine.core.interpolation import (
    MISSING,
    has_tokens,
    interpolate,
    lookup_path,
    split_path,
)

CONTEXT = {
    "input": {"name": "ada", "tags": ["a", "b"], "count": 3},
    "fetch": {"output": {"rows": [{"id": 1}, {"id": 2}]}},
}


class TestPaths:
    """Test path splitting and lookup."""

    def test_split_path_with_brackets(self):
        assert split_path("fetch.output.rows[1].id") == ["fetch", "output", "rows", "1", "id"]

    def test_lookup_nested(self):
        assert lookup_path(CONTEXT, "fetch.output.rows.0.id") == 1
        assert lookup_path(CONTEXT, "fetch.output.rows[-1].id") == 2

    def test_lookup_missing(self):
        assert lookup_path(CONTEXT, "input.nope") is MISSING
        assert lookup_path(CONTEXT, "input.tags.9") is MISSING
        assert lookup_path(CONTEXT, "input.name.deeper", default=None) is None


class TestInterpolate:
    """Test token resolution in strings and structures."""

    def test_full_token_keeps_type(self):
        """Test a string that is one token resolves to the raw value."""
        assert interpolate("${input.tags}", CONTEXT) == ["a", "b"]
        assert interpolate("{{input.count}}", CONTEXT) == 3

    def test_full_token_missing_is_none(self):
        assert interpolate("${input.unknown}", CONTEXT) is None

    def test_partial_tokens(self):
        """Test tokens embedded in text produce a string."""
        assert interpolate("Hello ${input.name}!", CONTEXT) == "Hello ada!"
        assert interpolate("tags=${input.tags}", CONTEXT) == 'tags=["a", "b"]'

    def test_partial_unresolved_left_in_place(self):
        assert interpolate("x ${nothing.here} y", CONTEXT) == "x ${nothing.here} y"

    def test_recursive_structures(self):
        template = {"who": "${input.name}", "ids": ["${fetch.output.rows[0].id}", 7]}
        assert interpolate(template, CONTEXT) == {"who": "ada", "ids": [1, 7]}

    def test_non_string_passthrough(self):
        assert interpolate(42, CONTEXT) == 42
        assert interpolate(None, CONTEXT) is None

    def test_filters(self):
        """Test filter chains."""
        assert interpolate("${input.name | upper}", CONTEXT) == "ADA"
        assert interpolate("${input.tags | first}", CONTEXT) == "a"
        assert interpolate("${input.tags | length}", CONTEXT) == 2
        assert interpolate('${input.tags | join("-")}', CONTEXT) == "a-b"
        assert interpolate('${input.missing | default("none")}', CONTEXT) == "none"

    def test_unknown_filter(self):
        with pytest.raises(ConfigurationError) as exc_info:
            interpolate("${input.name | shout}", CONTEXT)
        assert exc_info.value.details["filter"] == "shout"

    def test_filter_on_wrong_type(self):
        """A filter that cannot handle the value raises a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            interpolate("${input.count | first}", CONTEXT)
        assert exc_info.value.details == {"token": "input.count | first", "filter": "first"}
        assert isinstance(exc_info.value.__cause__, TypeError)

        with pytest.raises(ConfigurationError):
            interpolate("count: ${input.count | length}", CONTEXT)

    def test_has_tokens(self):
        assert has_tokens("${a}")
        assert has_tokens("{{a}}")
        assert not has_tokens("plain")
        assert not has_tokens(3)
