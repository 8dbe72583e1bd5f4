"""
Routing Predicate Module

A small declarative condition language used by tenant-configured routing
rules and by the custom routing strategy. Predicates are expression trees of
``(field, operator, value)`` conditions combined with ``all`` / ``any`` /
``not`` groups, evaluated against a nested mapping such as::

    {
        "conversation": {"priority": 1, "tags": ["vip"]},
        "agent": {"skills": ["billing"], "workload": 0.2},
    }

Evaluation never raises. A condition with an unknown operator or incompatible
types is false, and a tree that names a field outside the conversation and
agent views (other than a key under ``conversation.attributes``) matches
nothing at all.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Tuple, Union


class Operator(str, Enum):
    """Comparison operators supported by conditions."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"  # field value is one of value
    NOT_IN = "not_in"
    CONTAINS = "contains"  # collection field contains value
    CONTAINS_ALL = "contains_all"
    CONTAINS_ANY = "contains_any"
    EXISTS = "exists"


class PredicateError(ValueError):
    """Raised when a predicate document is structurally malformed."""
    pass


@dataclass(frozen=True)
class Condition:
    """Leaf condition comparing one field against a literal value."""

    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class AllOf:
    """True when every child predicate is true."""

    predicates: Tuple["Predicate", ...]


@dataclass(frozen=True)
class AnyOf:
    """True when at least one child predicate is true."""

    predicates: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Not:
    """Negates a child predicate."""

    predicate: "Predicate"


Predicate = Union[Condition, AllOf, AnyOf, Not]

_MISSING = object()

# Fields each context root exposes; keep in step with the records' to_context()
FIELD_NAMES: Dict[str, FrozenSet[str]] = {
    "conversation": frozenset({
        "conversation_id",
        "priority",
        "required_skills",
        "required_language",
        "preferred_agent_id",
        "tags",
        "channel",
        "contact_id",
        "attributes",
    }),
    "agent": frozenset({
        "agent_id",
        "status",
        "skills",
        "languages",
        "workload",
        "current_conversation_count",
        "max_concurrent_conversations",
        "avg_response_time_seconds",
        "satisfaction_score",
    }),
}

# Fields whose nested keys are tenant-defined
_FREE_FORM_FIELDS = frozenset({"conversation.attributes"})


# =============================================================================
# Parsing
# =============================================================================


def parse_predicate(data: Mapping[str, Any]) -> Predicate:
    """
    Build a predicate tree from its document form.

    Accepted shapes::

        {"field": "conversation.priority", "op": "lte", "value": 2}
        {"all": [<predicate>, ...]}
        {"any": [<predicate>, ...]}
        {"not": <predicate>}

    Unknown operators are accepted here and evaluate to false later; only
    documents that cannot be read as a tree at all are rejected.
    """
    if not isinstance(data, Mapping):
        raise PredicateError(f"Predicate must be an object, got {type(data).__name__}")

    if "all" in data:
        return AllOf(predicates=tuple(parse_predicate(p) for p in _as_list(data["all"], "all")))
    if "any" in data:
        return AnyOf(predicates=tuple(parse_predicate(p) for p in _as_list(data["any"], "any")))
    if "not" in data:
        return Not(predicate=parse_predicate(data["not"]))

    field_name = data.get("field")
    operator = data.get("op", data.get("operator"))
    if not isinstance(field_name, str) or not field_name:
        raise PredicateError("Condition requires a non-empty 'field'")
    if not isinstance(operator, str) or not operator:
        raise PredicateError(f"Condition on '{field_name}' requires an 'op'")

    value = data.get("value")
    if isinstance(value, list):
        value = tuple(value)
    return Condition(field=field_name, operator=operator, value=value)


def _as_list(value: Any, key: str) -> List[Any]:
    if not isinstance(value, (list, tuple)):
        raise PredicateError(f"'{key}' must be a list of predicates")
    return list(value)


def predicate_to_dict(predicate: Predicate) -> Dict[str, Any]:
    """Convert a predicate tree back to its document form."""
    if isinstance(predicate, AllOf):
        return {"all": [predicate_to_dict(p) for p in predicate.predicates]}
    if isinstance(predicate, AnyOf):
        return {"any": [predicate_to_dict(p) for p in predicate.predicates]}
    if isinstance(predicate, Not):
        return {"not": predicate_to_dict(predicate.predicate)}

    value = predicate.value
    if isinstance(value, tuple):
        value = list(value)
    return {"field": predicate.field, "op": predicate.operator, "value": value}


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(predicate: Predicate, context: Mapping[str, Any]) -> bool:
    """
    Evaluate a predicate tree against a context mapping.

    A tree that names any unrecognized field matches nothing, including
    under ``not``. Recognized fields with no value are handled per condition.
    """
    if unknown_fields(predicate):
        return False
    return _evaluate(predicate, context)


def _evaluate(predicate: Predicate, context: Mapping[str, Any]) -> bool:
    if isinstance(predicate, AllOf):
        return all(_evaluate(p, context) for p in predicate.predicates)
    if isinstance(predicate, AnyOf):
        return any(_evaluate(p, context) for p in predicate.predicates)
    if isinstance(predicate, Not):
        return not _evaluate(predicate.predicate, context)
    if isinstance(predicate, Condition):
        return _evaluate_condition(predicate, context)
    return False


def is_known_field(path: str) -> bool:
    """Whether ``path`` names a conversation or agent field predicates can read."""
    parts = path.split(".")
    if len(parts) < 2 or parts[1] not in FIELD_NAMES.get(parts[0], ()):
        return False
    return len(parts) == 2 or ".".join(parts[:2]) in _FREE_FORM_FIELDS


def unknown_fields(predicate: Predicate) -> List[str]:
    """Fields named by the tree that no routing context provides."""
    if isinstance(predicate, (AllOf, AnyOf)):
        return [f for p in predicate.predicates for f in unknown_fields(p)]
    if isinstance(predicate, Not):
        return unknown_fields(predicate.predicate)
    if isinstance(predicate, Condition) and not is_known_field(predicate.field):
        return [predicate.field]
    return []


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through nested mappings; missing keys resolve to a sentinel."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    actual = resolve_field(context, condition.field)

    if condition.operator == Operator.EXISTS.value:
        present = actual is not _MISSING and actual is not None
        wanted = True if condition.value is None else bool(condition.value)
        return present == wanted

    if actual is _MISSING:
        return False

    try:
        operator = Operator(condition.operator)
    except ValueError:
        return False

    expected = condition.value
    try:
        if operator == Operator.EQ:
            return actual == expected
        if operator == Operator.NE:
            return actual != expected
        if operator == Operator.GT:
            return actual > expected
        if operator == Operator.GTE:
            return actual >= expected
        if operator == Operator.LT:
            return actual < expected
        if operator == Operator.LTE:
            return actual <= expected
        if operator == Operator.IN:
            return _is_collection(expected) and actual in expected
        if operator == Operator.NOT_IN:
            return _is_collection(expected) and actual not in expected
        if operator == Operator.CONTAINS:
            return _is_collection(actual) and expected in actual
        if operator == Operator.CONTAINS_ALL:
            return (
                _is_collection(actual)
                and _is_collection(expected)
                and set(expected).issubset(set(actual))
            )
        if operator == Operator.CONTAINS_ANY:
            return (
                _is_collection(actual)
                and _is_collection(expected)
                and bool(set(expected) & set(actual))
            )
    except TypeError:
        return False

    return False


def _is_collection(value: Any) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, Mapping))


__all__ = [
    "Operator",
    "PredicateError",
    "Condition",
    "AllOf",
    "AnyOf",
    "Not",
    "Predicate",
    "parse_predicate",
    "predicate_to_dict",
    "evaluate",
    "resolve_field",
    "is_known_field",
    "unknown_fields",
    "FIELD_NAMES",
]
