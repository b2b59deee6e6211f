"""Condition parsing and evaluation."""

import pytest
from pydantic import ValidationError

from stepflow.conditions import (
    MISSING,
    AllOf,
    Comparison,
    ExecutionContext,
    Not,
    Operator,
    compare_values,
    evaluate,
)
from stepflow.models import WorkflowStep


def _context(**kwargs) -> ExecutionContext:
    defaults = dict(execution_id="exec-1", workflow_id="wf-1", user_id="alice")
    defaults.update(kwargs)
    return ExecutionContext(**defaults)


def test_compact_form_is_expanded():
    step = WorkflowStep(
        step_order=1,
        conditions={
            "all": [
                {"field": "step.0.status", "operator": "equals", "value": "active"},
                {"not": {"field": "param.dry_run", "operator": "equals", "value": True}},
            ]
        },
    )
    assert isinstance(step.conditions, AllOf)
    assert isinstance(step.conditions.conditions[0], Comparison)
    assert isinstance(step.conditions.conditions[1], Not)


def test_unknown_field_root_is_rejected():
    with pytest.raises(ValidationError):
        WorkflowStep(step_order=0, conditions={"field": "env.HOME", "operator": "exists"})


def test_step_field_requires_order():
    with pytest.raises(ValidationError):
        WorkflowStep(step_order=0, conditions={"field": "step.status", "operator": "exists"})


def test_evaluate_against_step_outputs_and_params():
    context = _context(
        parameters={"threshold": 10},
        step_outputs={0: {"status": "active", "items": [{"total": 42}]}},
    )
    assert evaluate(Comparison(field="step.0.status", value="active"), context)
    assert evaluate(
        Comparison(field="step.0.items.0.total", operator=Operator.GREATER_THAN, value=10),
        context,
    )
    assert not evaluate(
        Comparison(field="param.threshold", operator=Operator.LESS_THAN, value=5), context
    )


def test_missing_values():
    context = _context()
    assert evaluate(Comparison(field="step.3.id", operator=Operator.NOT_EXISTS), context)
    assert not evaluate(Comparison(field="param.x", operator=Operator.EXISTS), context)
    assert not evaluate(Comparison(field="param.x", value=None), context)
    assert evaluate(Comparison(field="param.x", operator=Operator.NOT_EQUALS, value=1), context)


def test_execution_and_global_roots():
    context = _context(variables={"region": "eu"}, attempt=2)
    assert evaluate(Comparison(field="global.region", value="eu"), context)
    assert evaluate(Comparison(field="execution.attempt", value=2), context)
    assert context.lookup("execution.user_id") == "alice"


@pytest.mark.parametrize(
    "actual,operator,expected,result",
    [
        ([1, 2, 3], Operator.CONTAINS, 2, True),
        ("hello world", Operator.CONTAINS, "world", True),
        ("abc", Operator.GREATER_THAN, 3, False),
        (None, Operator.EXISTS, None, False),
        (MISSING, Operator.EQUALS, None, False),
    ],
)
def test_compare_values(actual, operator, expected, result):
    assert compare_values(actual, operator, expected) is result
