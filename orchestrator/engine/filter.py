# ============================================================================
# JSON FILTER
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Recursive search used by filter steps
# PURPOSE: Collect every object in a JSON tree whose key matches a condition
# CREATED: 18 OCT 2026
# ============================================================================
"""
JSON Filter

Walks a JSON-like value (dicts, lists, scalars) depth-first. Every object that
has ``search_key`` and whose value satisfies the condition is collected; the
walk then continues into that object's values, so nested matches are found
too.

Conditions:
    =           value equals search_value
    !=          value differs from search_value
    contains    string contains / list has element / object has key
    startsWith  string prefix
    >  <        numeric comparison (search_value must be numeric)

Example:
    filter:
      source: devices
      search_key: status
      condition: "="
      search_value: offline
"""

import logging
from typing import Any, Callable, Dict, List

from core.errors import TypeMismatchError

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _contains(value: Any, needle: Any) -> bool:
    if isinstance(value, str):
        return isinstance(needle, str) and needle in value
    if isinstance(value, list):
        return any(_equals(item, needle) for item in value)
    if isinstance(value, dict):
        return isinstance(needle, str) and needle in value
    return False


def _numeric(search_value: Any) -> float:
    if _is_number(search_value):
        return float(search_value)
    try:
        return float(search_value)
    except (TypeError, ValueError):
        raise TypeMismatchError(f"Filter value '{search_value}' is not numeric")


CONDITIONS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": _equals,
    "!=": lambda value, target: not _equals(value, target),
    "contains": _contains,
    "startsWith": lambda value, target: (
        isinstance(value, str) and isinstance(target, str) and value.startswith(target)
    ),
    ">": lambda value, target: _is_number(value) and value > _numeric(target),
    "<": lambda value, target: _is_number(value) and value < _numeric(target),
}


def search_json(
    data: Any,
    search_key: str,
    condition: str,
    search_value: Any,
) -> List[Any]:
    """
    Collect objects whose ``search_key`` satisfies ``condition``.

    Args:
        data: JSON-like value to search
        search_key: Key to test on every object
        condition: One of CONDITIONS
        search_value: Value the condition compares against

    Returns:
        Matching objects in depth-first order
    """
    check = CONDITIONS.get(condition)
    if check is None:
        raise TypeMismatchError(f"Unsupported filter condition: {condition}")

    results: List[Any] = []
    _walk(data, search_key, check, search_value, results)
    return results


def _walk(
    node: Any,
    search_key: str,
    check: Callable[[Any, Any], bool],
    search_value: Any,
    results: List[Any],
) -> None:
    if isinstance(node, dict):
        if search_key in node and check(node[search_key], search_value):
            results.append(node)
        for value in node.values():
            _walk(value, search_key, check, search_value, results)
    elif isinstance(node, list):
        for item in node:
            _walk(item, search_key, check, search_value, results)


def filter_result(matches: List[Any]) -> Dict[str, Any]:
    """Step output shape for a filter step."""
    return {
        "found": bool(matches),
        "count": len(matches),
        "results": matches,
    }


__all__ = [
    "CONDITIONS",
    "search_json",
    "filter_result",
]
