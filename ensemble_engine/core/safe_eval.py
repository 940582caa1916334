"""
Safe expression evaluation using simpleeval.

Conditions, switch values and item expressions in a flow are evaluated in a
sandbox. Interpolation tokens are bound to generated variable names before
evaluation so resolved values keep their types.
"""
from collections.abc import Mapping
from typing import Any

from simpleeval import DEFAULT_FUNCTIONS, EvalWithCompoundTypes

from ensemble_engine.core.exceptions import ConfigurationError
from ensemble_engine.core.interpolation import (
    MISSING,
    TOKEN_PATTERN,
    interpolate,
    is_path,
    resolve_token,
)
from ensemble_engine.core.logging import get_logger

logger = get_logger("safe_eval")


# Safe functions available in expressions
SAFE_FUNCTIONS = {
    **DEFAULT_FUNCTIONS,
    # Type conversions
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "len": len,
    "list": list,
    "dict": dict,
    # Math
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    # String
    "lower": lambda s: s.lower() if isinstance(s, str) else s,
    "upper": lambda s: s.upper() if isinstance(s, str) else s,
    # Collections
    "any": any,
    "all": all,
}


def create_evaluator(names: Mapping[str, Any] | None = None) -> EvalWithCompoundTypes:
    """
    Create a configured safe evaluator.

    Args:
        names: Variable names available in expressions.

    Returns:
        Configured evaluator instance.
    """
    evaluator = EvalWithCompoundTypes()
    evaluator.functions = SAFE_FUNCTIONS.copy()
    evaluator.names = dict(names) if names else {}
    return evaluator


def bind_tokens(expression: str, context: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    """
    Replace interpolation tokens with generated variable names.

    Tokens that resolve are bound to ``token_<n>``; tokens that do not are
    inlined as parenthesized sub-expressions so the evaluator sees them.
    """
    bound: dict[str, Any] = {}

    def replace(match) -> str:
        body = match.group(1) if match.group(1) is not None else match.group(2)
        value = resolve_token(body, context)
        if value is MISSING:
            if is_path(body):
                value = None
            else:
                return f"({body.strip()})"
        name = f"token_{len(bound)}"
        bound[name] = value
        return name

    return TOKEN_PATTERN.sub(replace, expression), bound


def evaluate_expression(expression: Any, context: Mapping[str, Any]) -> Any:
    """
    Evaluate a flow expression against a resolution context.

    Non-string values are interpolated recursively. A string that is a single
    token returns the resolved value. Anything else is evaluated by simpleeval
    with the context's top-level keys available as names.

    Raises:
        ConfigurationError: If the expression cannot be evaluated.
    """
    if not isinstance(expression, str):
        return interpolate(expression, context)

    full = TOKEN_PATTERN.fullmatch(expression.strip())
    if full:
        body = full.group(1) if full.group(1) is not None else full.group(2)
        if is_path(body.split("|")[0]) or "|" in body:
            value = resolve_token(body, context)
            return None if value is MISSING else value

    rewritten, bound = bind_tokens(expression, context)
    evaluator = create_evaluator({**context, **bound})
    try:
        return evaluator.eval(rewritten)
    except Exception as e:
        raise ConfigurationError(
            f"Failed to evaluate expression '{expression}': {e}",
            {"expression": expression},
        ) from e


def evaluate_condition(condition: Any, context: Mapping[str, Any]) -> bool:
    """
    Evaluate a step condition.

    Returns:
        Boolean result. Conditions that fail to evaluate are false.
    """
    if condition is None:
        return True
    if isinstance(condition, bool):
        return condition
    try:
        return bool(evaluate_expression(condition, context))
    except ConfigurationError as e:
        logger.warning(
            f"Condition evaluated to false after error: {e}",
            extra={"extra_fields": {"event": "condition_error", "condition": str(condition)}},
        )
        return False
