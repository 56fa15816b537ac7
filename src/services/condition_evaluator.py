"""
Condition Evaluator
Pure comparison of one branch condition against the inbound message or session data.
"""
from typing import Any, Callable, Dict

from models.flow_data import BranchCondition
from models.execution_data import ExecutionContext

MESSAGE_FIELD = "message"


def _equals(actual: str, literal: str) -> bool:
    return actual == literal


def _not_equals(actual: str, literal: str) -> bool:
    return actual != literal


def _contains(actual: str, literal: str) -> bool:
    return literal in actual


def _not_contains(actual: str, literal: str) -> bool:
    return literal not in actual


def _starts_with(actual: str, literal: str) -> bool:
    return actual.startswith(literal)


def _ends_with(actual: str, literal: str) -> bool:
    return actual.endswith(literal)


OPERATORS: Dict[str, Callable[[str, str], bool]] = {
    "equals": _equals,
    "not_equals": _not_equals,
    "contains": _contains,
    "not_contains": _not_contains,
    "starts_with": _starts_with,
    "ends_with": _ends_with,
}


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_field(field: str, context: ExecutionContext) -> str:
    """
    "message" reads the inbound text, anything else reads session data.
    Missing values resolve to the empty string.
    """
    if field == MESSAGE_FIELD:
        return _to_text(context.current_message)
    return _to_text(context.session_data.get(field))


def evaluate_condition(condition: BranchCondition, context: ExecutionContext) -> bool:
    """
    Evaluate one branch condition, case-insensitively.
    Unknown operators evaluate to False.
    """
    compare = OPERATORS.get((condition.operator or "").strip().lower())
    if compare is None:
        return False
    actual = resolve_field(condition.field, context).lower()
    literal = _to_text(condition.literal).lower()
    return compare(actual, literal)
