"""Safe expression evaluation for condition cases and loop predicates.

Expressions are evaluated with simpleeval over a whitelist of names and
functions; attribute access to dunder members, imports and arbitrary
calls are rejected by the evaluator.
"""

from __future__ import annotations

import logging
from typing import Any

from simpleeval import EvalWithCompoundTypes, InvalidExpression, NameNotDefined

from flowrun.errors import ExpressionError

logger = logging.getLogger(__name__)

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
    "sorted": sorted,
}

_LITERAL_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "none": None,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}


def safe_eval(expression: str, names: dict[str, Any]) -> Any:
    """
    Evaluate ``expression`` against ``names``.

    Raises:
        NameNotDefined: the expression uses a name that is not bound
        ExpressionError: the expression is invalid or raised while evaluating
    """
    evaluator = EvalWithCompoundTypes(
        names={**_LITERAL_NAMES, **names},
        functions=SAFE_FUNCTIONS,
    )
    try:
        return evaluator.eval(expression)
    except NameNotDefined:
        raise
    except InvalidExpression as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e}") from e
    except Exception as e:
        raise ExpressionError(f"Expression '{expression}' failed: {e}") from e


def evaluate_truthy(expression: str, names: dict[str, Any]) -> bool:
    """
    Evaluate a boolean expression.

    An unbound name means the value it refers to is absent (e.g. it was
    produced on a branch that was not taken); the expression is then
    treated as false rather than failing the node.
    """
    try:
        return bool(safe_eval(expression, names))
    except NameNotDefined as e:
        logger.warning(
            "      ⚠ Condition '%s' references an absent value (%s); treating as false",
            expression,
            e,
        )
        return False
