"""Step conditions: a small expression tree evaluated over an execution context.

A step whose condition evaluates to ``False`` is skipped, not failed.
Conditions can be written in a compact dictionary form::

    {"field": "step.1.status", "operator": "equals", "value": "active"}
    {"all": [{...}, {...}]}
    {"any": [{...}, {...}]}
    {"not": {...}}

Field paths start with ``step.<order>`` (output of a prior step),
``param`` (execution parameters), ``global`` (execution variables) or
``execution`` (identity of the running execution).
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, BeforeValidator, Field, field_validator

FIELD_ROOTS = ("step", "param", "global", "execution")

MISSING = object()


class ExecutionContext(BaseModel):
    """Read-only data available to conditions and parameter templates."""

    execution_id: str
    workflow_id: str
    user_id: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    step_outputs: Dict[int, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1

    def lookup(self, path: str, default: Any = None) -> Any:
        """Resolve a dotted ``path`` against this context."""
        value = resolve_path(path, self)
        return default if value is MISSING else value


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class Comparison(BaseModel):
    kind: Literal["compare"] = "compare"
    field: str
    operator: Operator = Operator.EQUALS
    value: Any = None

    @field_validator("field")
    @classmethod
    def _known_root(cls, value: str) -> str:
        root = value.split(".", 1)[0]
        if root not in FIELD_ROOTS:
            raise ValueError(
                f"condition field must start with one of {', '.join(FIELD_ROOTS)}: {value!r}"
            )
        if root == "step":
            parts = value.split(".")
            if len(parts) < 2 or not parts[1].isdigit():
                raise ValueError(f"step condition field needs a step order: {value!r}")
        return value


class AllOf(BaseModel):
    kind: Literal["all"] = "all"
    conditions: List["Condition"]


class AnyOf(BaseModel):
    kind: Literal["any"] = "any"
    conditions: List["Condition"]


class Not(BaseModel):
    kind: Literal["not"] = "not"
    condition: "Condition"


def coerce_condition(raw: Any) -> Any:
    """Expand the compact dictionary form into tagged nodes."""
    if not isinstance(raw, dict) or "kind" in raw:
        return raw
    if "all" in raw:
        return {"kind": "all", "conditions": [coerce_condition(c) for c in raw["all"]]}
    if "any" in raw:
        return {"kind": "any", "conditions": [coerce_condition(c) for c in raw["any"]]}
    if "not" in raw:
        return {"kind": "not", "condition": coerce_condition(raw["not"])}
    return {"kind": "compare", **raw}


Condition = Annotated[
    Union[Comparison, AllOf, AnyOf, Not],
    Field(discriminator="kind"),
    BeforeValidator(coerce_condition),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


def resolve_path(path: str, context: ExecutionContext) -> Any:
    parts = path.split(".")
    root, rest = parts[0], parts[1:]
    if root == "step":
        if not rest or not rest[0].isdigit():
            return MISSING
        current: Any = context.step_outputs.get(int(rest[0]), MISSING)
        rest = rest[1:]
    elif root == "param":
        current = context.parameters
    elif root == "global":
        current = context.variables
    elif root == "item":
        current = context.variables.get("item", MISSING)
    elif root == "execution":
        current = {
            "id": context.execution_id,
            "workflow_id": context.workflow_id,
            "user_id": context.user_id,
            "attempt": context.attempt,
        }
    else:
        return MISSING

    for part in rest:
        if current is MISSING:
            return MISSING
        if isinstance(current, dict):
            current = current.get(part, MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else MISSING
        else:
            current = getattr(current, part, MISSING)
    return current


def compare_values(actual: Any, operator: Operator, expected: Any) -> bool:
    """Apply ``operator``; ``actual`` may be the missing-value sentinel."""
    op = Operator(operator)
    if op is Operator.EXISTS:
        return actual is not MISSING and actual is not None
    if op is Operator.NOT_EXISTS:
        return actual is MISSING or actual is None
    if actual is MISSING:
        return op is Operator.NOT_EQUALS
    if op is Operator.EQUALS:
        return actual == expected
    if op is Operator.NOT_EQUALS:
        return actual != expected
    if op is Operator.CONTAINS:
        if isinstance(actual, (list, tuple, set, dict)):
            return expected in actual
        return str(expected) in str(actual)
    try:
        if op is Operator.GREATER_THAN:
            return actual > expected
        if op is Operator.LESS_THAN:
            return actual < expected
    except TypeError:
        # Unordered types never satisfy an ordering comparison.
        return False
    raise ValueError(f"Unsupported operator: {op}")


def _compare(node: Comparison, context: ExecutionContext) -> bool:
    return compare_values(resolve_path(node.field, context), node.operator, node.value)


def evaluate(condition: Union[Comparison, AllOf, AnyOf, Not], context: ExecutionContext) -> bool:
    """Evaluate ``condition`` without side effects."""
    if isinstance(condition, Comparison):
        return _compare(condition, context)
    if isinstance(condition, AllOf):
        return all(evaluate(c, context) for c in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate(c, context) for c in condition.conditions)
    if isinstance(condition, Not):
        return not evaluate(condition.condition, context)
    raise TypeError(f"Unknown condition node: {type(condition).__name__}")
