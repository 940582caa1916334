"""
Template interpolation over a resolution context.

Two token syntaxes are accepted: ``${path}`` and ``{{path}}``.

- A string that is exactly one token resolves to the raw value (any type),
  or ``None`` when the path does not resolve.
- A string containing tokens among other text resolves to a string; tokens
  that do not resolve are left in place.
- Lists and dicts are resolved recursively.

Paths are dotted (``step.output.items``) and accept list indexes either as
segments (``items.0``) or brackets (``items[0]``). A path may be followed by a
filter chain: ``${input.name | upper}``, ``${input.tags | first | default("none")}``.
"""
import json
import re
from collections.abc import Mapping
from typing import Any, Callable

from ensemble_engine.core.exceptions import ConfigurationError

TOKEN_PATTERN = re.compile(r"\$\{([^}]*)\}|\{\{([^}]*)\}\}")
PATH_PATTERN = re.compile(r"^[A-Za-z_][\w-]*(?:\.[\w-]+|\[-?\d+\])*$")

MISSING = object()


def _default(value: Any, fallback: Any = None) -> Any:
    return fallback if value is None or value == "" else value


FILTERS: dict[str, Callable[..., Any]] = {
    "upper": lambda v: v.upper() if isinstance(v, str) else v,
    "lower": lambda v: v.lower() if isinstance(v, str) else v,
    "strip": lambda v: v.strip() if isinstance(v, str) else v,
    "length": lambda v: len(v) if v is not None else 0,
    "first": lambda v: v[0] if v else None,
    "last": lambda v: v[-1] if v else None,
    "json": lambda v: json.dumps(v, default=str),
    "join": lambda v, sep=",": sep.join(str(item) for item in v) if v is not None else "",
    "default": _default,
}

_FILTER_CALL = re.compile(r"^(\w+)(?:\((.*)\))?$")


def split_path(path: str) -> list[str]:
    """Split ``a.b[0].c`` into ``["a", "b", "0", "c"]``."""
    normalized = re.sub(r"\[(-?\d+)\]", r".\1", path.strip())
    return [part.strip() for part in normalized.split(".") if part.strip()]


def lookup_path(context: Any, path: str, default: Any = MISSING) -> Any:
    """Walk a dotted path through mappings and sequences."""
    current = context
    for part in split_path(path):
        if isinstance(current, Mapping):
            try:
                current = current[part]
            except KeyError:
                return default
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def is_path(expression: str) -> bool:
    """Whether a token body is a plain path (no operators, no filters)."""
    return bool(PATH_PATTERN.match(expression.strip()))


def _parse_filter_args(raw: str | None) -> list[Any]:
    if not raw:
        return []
    args = []
    for piece in raw.split(","):
        piece = piece.strip()
        try:
            args.append(json.loads(piece))
        except ValueError:
            args.append(piece.strip("'\""))
    return args


def _apply_filters(value: Any, chain: list[str], body: str) -> Any:
    for item in chain:
        match = _FILTER_CALL.match(item.strip())
        if not match or match.group(1) not in FILTERS:
            raise ConfigurationError(
                f"Unknown interpolation filter '{item.strip()}' in '${{{body}}}'",
                {"token": body, "filter": item.strip()},
            )
        try:
            value = FILTERS[match.group(1)](value, *_parse_filter_args(match.group(2)))
        except (TypeError, ValueError, KeyError, IndexError, AttributeError) as e:
            raise ConfigurationError(
                f"Filter '{match.group(1)}' failed in '${{{body}}}': {e}",
                {"token": body, "filter": match.group(1)},
            ) from e
    return value


def resolve_token(body: str, context: Mapping[str, Any]) -> Any:
    """Resolve the inside of one ``${...}`` token, filters included."""
    segments = re.split(r"(?<!\|)\|(?!\|)", body)
    path = segments[0].strip()
    if not path:
        return MISSING
    value = lookup_path(context, path)
    filters = [s for s in segments[1:] if s.strip()]
    if filters:
        value = _apply_filters(None if value is MISSING else value, filters, body.strip())
    return value


def _token_body(match: re.Match) -> str:
    return match.group(1) if match.group(1) is not None else match.group(2)


def interpolate_string(template: str, context: Mapping[str, Any]) -> Any:
    full = TOKEN_PATTERN.fullmatch(template)
    if full:
        value = resolve_token(_token_body(full), context)
        return None if value is MISSING else value

    def replace(match: re.Match) -> str:
        body = _token_body(match)
        if not body.strip():
            return ""
        value = resolve_token(body, context)
        if value is MISSING:
            return match.group(0)
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)

    return TOKEN_PATTERN.sub(replace, template)


def interpolate(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve every token in ``value`` against ``context``."""
    if isinstance(value, str):
        if not TOKEN_PATTERN.search(value):
            return value
        return interpolate_string(value, context)
    if isinstance(value, list):
        return [interpolate(item, context) for item in value]
    if isinstance(value, dict):
        return {key: interpolate(item, context) for key, item in value.items()}
    return value


def has_tokens(value: Any) -> bool:
    return isinstance(value, str) and bool(TOKEN_PATTERN.search(value))
