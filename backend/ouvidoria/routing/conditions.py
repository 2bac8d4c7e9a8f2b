"""
Routing condition language.

A condition is a JSON tree:

    {"all": [node, ...]}     every child matches (short-circuit)
    {"any": [node, ...]}     at least one child matches (short-circuit)
    {"not": node}            negation
    {"field": "message.text", "op": "contains", "value": "poste"}

Leaf operators: eq, ne, contains, regex, in, not_in, exists, gt, gte, lt, lte.
Evaluation is total: an unknown operator, a malformed node or an invalid
regex simply does not match.
"""

import logging
import math
import re

logger = logging.getLogger(__name__)

FIELDS = ("channel", "message.text")


def build_facts(text: str | None, channel: str | None) -> dict:
    """The values a rule can look at for one inbound message."""
    return {"channel": channel, "message.text": text}


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value) -> float:
    if value is None or isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _split_list(value) -> list[str]:
    if isinstance(value, list):
        return [_as_text(item).strip() for item in value]
    return [item.strip() for item in _as_text(value).split(",")]


def _compare_leaf(node: dict, facts: dict) -> bool:
    op = node.get("op")
    field = node.get("field")
    expected = node.get("value")
    actual = facts.get(field) if isinstance(field, str) else None

    if op == "eq":
        return actual is not None and _as_text(actual) == _as_text(expected)
    if op == "ne":
        return actual is None or _as_text(actual) != _as_text(expected)
    if op == "contains":
        return _as_text(expected).lower() in _as_text(actual).lower()
    if op == "regex":
        try:
            return re.search(_as_text(expected), _as_text(actual), re.IGNORECASE) is not None
        except re.error:
            logger.warning("Invalid routing regex %r", expected)
            return False
    if op == "in":
        return actual is not None and _as_text(actual) in _split_list(expected)
    if op == "not_in":
        return actual is None or _as_text(actual) not in _split_list(expected)
    if op == "exists":
        return actual is not None
    if op in ("gt", "gte", "lt", "lte"):
        left, right = _as_number(actual), _as_number(expected)
        if math.isnan(left) or math.isnan(right):
            return False
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right
    return False


def evaluate(node, facts: dict) -> bool:
    if not isinstance(node, dict):
        return False
    if "all" in node:
        children = node["all"]
        return isinstance(children, list) and all(evaluate(c, facts) for c in children)
    if "any" in node:
        children = node["any"]
        return isinstance(children, list) and any(evaluate(c, facts) for c in children)
    if "not" in node:
        return not evaluate(node["not"], facts) if isinstance(node["not"], dict) else False
    if "op" in node and "field" in node:
        return _compare_leaf(node, facts)
    return False
