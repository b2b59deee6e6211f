"""Step runner: executes one workflow step and reports a ``StepOutcome``.

The runner never writes to the store or the queue. It enforces the step
timeout itself and converts every step-level error into ``StepFailed`` so the
coordinator can decide what to persist.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from typing import Any, Dict, Optional, Tuple

import httpx

from .conditions import MISSING, ExecutionContext, Operator, compare_values
from .constants import DEFAULT_STEP_TIMEOUT
from .credentials import CredentialResolver
from .errors import (
    NonRetryableStepError,
    RetryableStepError,
    StepError,
    StepValidationError,
)
from .models import StepFailed, StepOutcome, StepSucceeded, StepType, WorkflowStep

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def parse_action(action: Optional[str]) -> Tuple[str, str]:
    """Split ``"METHOD /path"`` into its parts."""
    parts = (action or "").split()
    if len(parts) != 2:
        raise StepValidationError(f'Invalid action format: {action!r}. Expected "METHOD /path"')
    method, path = parts[0].upper(), parts[1]
    if method not in HTTP_METHODS:
        raise StepValidationError(f"Unsupported HTTP method: {method}")
    return method, path


def render(value: Any, context: ExecutionContext) -> Any:
    """Substitute ``{{step.N.x}}``, ``{{param.x}}`` and ``{{global.x}}`` placeholders.

    A string made of a single placeholder is replaced by the raw value so
    numbers, lists and objects keep their type. Unknown placeholders are left
    untouched.
    """
    if isinstance(value, dict):
        return {k: render(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, context) for v in value]
    if not isinstance(value, str):
        return value

    whole = _PLACEHOLDER.fullmatch(value.strip())
    if whole:
        resolved = context.lookup(whole.group(1), MISSING)
        return value if resolved is MISSING else resolved

    def _sub(match: "re.Match[str]") -> str:
        resolved = context.lookup(match.group(1), MISSING)
        return match.group(0) if resolved is MISSING else str(resolved)

    return _PLACEHOLDER.sub(_sub, value)


class StepExecutor(metaclass=abc.ABCMeta):
    """Executes steps of one ``StepType``."""

    type: StepType

    def validate(self, step: WorkflowStep) -> None:
        """Raise ``StepValidationError`` when ``step`` cannot be executed."""

    @abc.abstractmethod
    async def execute(self, step: WorkflowStep, context: ExecutionContext) -> StepSucceeded:
        raise NotImplementedError


class ApiCallExecutor(StepExecutor):
    """Calls an endpoint on the step's API connection."""

    type = StepType.API_CALL

    def __init__(self, resolver: CredentialResolver) -> None:
        self._resolver = resolver

    def validate(self, step: WorkflowStep) -> None:
        if not step.connection_ref:
            raise StepValidationError(f"{step.label} has no connection_ref")
        parse_action(step.action)

    async def execute(self, step: WorkflowStep, context: ExecutionContext) -> StepSucceeded:
        method, path = parse_action(step.action)
        path = render(path, context)
        params = render(step.parameters, context)

        client = await self._resolver.resolve(step.connection_ref)
        async with client:
            try:
                response = await client.request(
                    method,
                    path,
                    params=params.get("query"),
                    json=params.get("body") if method != "GET" else None,
                    headers=params.get("headers"),
                )
            except httpx.TimeoutException as exc:
                error = RetryableStepError if step.idempotent else NonRetryableStepError
                raise error(f"{method} {path} timed out: {exc!r}") from exc
            except httpx.TransportError as exc:
                raise RetryableStepError(f"{method} {path} failed: {exc}") from exc

        body = _decode_body(response)
        status = response.status_code
        if status == 429 or status >= 500:
            raise RetryableStepError(
                f"API call failed: {status} {response.reason_phrase}", status_code=status, data=body
            )
        if status >= 400:
            raise NonRetryableStepError(
                f"API call failed: {status} {response.reason_phrase}", status_code=status, data=body
            )
        return StepSucceeded(
            output=body, metadata={"method": method, "path": path, "status_code": status}
        )


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class TransformExecutor(StepExecutor):
    """Pure data operations over a prior step output or a parameter.

    Parameters::

        operation: map | filter | aggregate
        input: {"step": 1} | {"param": "items"} | {"data": [...]}
        fields: {"out_key": "{{item.in_key}}"}              # map
        condition: {"field": "x", "operator": "equals", "value": 1}  # filter
        aggregate: {"function": "sum|count|average", "field": "x"}
    """

    type = StepType.TRANSFORM

    def validate(self, step: WorkflowStep) -> None:
        operation = step.parameters.get("operation")
        if operation not in ("map", "filter", "aggregate"):
            raise StepValidationError(f"Unsupported transform operation: {operation!r}")
        if "input" not in step.parameters:
            raise StepValidationError(f"{step.label} has no transform input")

    async def execute(self, step: WorkflowStep, context: ExecutionContext) -> StepSucceeded:
        params = step.parameters
        items = self._input(params["input"], context)
        operation = params["operation"]
        if operation == "map":
            output: Any = [self._map_item(item, params.get("fields", {})) for item in items]
        elif operation == "filter":
            output = [item for item in items if self._matches(item, params.get("condition") or {})]
        else:
            output = self._aggregate(items, params.get("aggregate") or {})
        return StepSucceeded(output=output, metadata={"operation": operation})

    @staticmethod
    def _input(source: Dict[str, Any], context: ExecutionContext) -> list:
        if "step" in source:
            data = context.step_outputs.get(int(source["step"]))
            if source.get("path"):
                data = context.lookup(f"step.{source['step']}.{source['path']}")
        elif "param" in source:
            data = context.parameters.get(source["param"])
        else:
            data = source.get("data")
        if data is None:
            return []
        if not isinstance(data, list):
            raise StepValidationError(f"Transform input must be a list, got {type(data).__name__}")
        return data

    @staticmethod
    def _map_item(item: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        item_context = ExecutionContext(
            execution_id="", workflow_id="", user_id="", variables={"item": item}
        )
        return {key: render(template, item_context) for key, template in fields.items()}

    @staticmethod
    def _matches(item: Any, condition: Dict[str, Any]) -> bool:
        field = condition.get("field")
        actual = item.get(field, MISSING) if isinstance(item, dict) else MISSING
        try:
            operator = Operator(condition.get("operator", "equals"))
        except ValueError as exc:
            raise StepValidationError(str(exc)) from exc
        return compare_values(actual, operator, condition.get("value"))

    @staticmethod
    def _aggregate(items: list, spec: Dict[str, Any]) -> Any:
        function = spec.get("function", "count")
        field = spec.get("field")
        if function == "count":
            return len(items)
        values = [(item.get(field) or 0) if isinstance(item, dict) else 0 for item in items]
        if function == "sum":
            return sum(values)
        if function == "average":
            return sum(values) / len(values) if values else 0
        raise StepValidationError(f"Unsupported aggregate function: {function!r}")


class StepRunner:
    """Dispatches steps to executors and guards them with a timeout."""

    def __init__(
        self,
        resolver: CredentialResolver,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        executors: Optional[Dict[StepType, StepExecutor]] = None,
    ) -> None:
        self.default_timeout = default_timeout
        self._executors: Dict[StepType, StepExecutor] = {
            StepType.API_CALL: ApiCallExecutor(resolver),
            StepType.TRANSFORM: TransformExecutor(),
        }
        if executors:
            self._executors.update(executors)

    def register_executor(self, executor: StepExecutor) -> None:
        self._executors[executor.type] = executor

    async def run(
        self,
        step: WorkflowStep,
        context: ExecutionContext,
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        """Execute ``step`` and return its outcome. Never raises step errors."""
        timeout = timeout or step.timeout or self.default_timeout
        executor = self._executors.get(step.type)
        if executor is None:
            return StepFailed(
                error=f"No executor registered for step type {step.type.value}",
                retryable=False,
                error_type="StepValidationError",
            )

        try:
            executor.validate(step)
            return await asyncio.wait_for(executor.execute(step, context), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{step.label} of execution {context.execution_id} timed out after {timeout}s"
            )
            return StepFailed(
                error=f"Step timed out after {timeout}s",
                retryable=step.idempotent,
                error_type="TimeoutError",
            )
        except StepError as exc:
            return StepFailed(
                error=str(exc),
                retryable=exc.retryable,
                error_type=type(exc).__name__,
                status_code=exc.status_code,
            )
        except Exception as exc:
            logger.exception(
                f"Unexpected error in {step.label} of execution {context.execution_id}"
            )
            return StepFailed(
                error=f"{type(exc).__name__}: {exc}",
                retryable=False,
                error_type=type(exc).__name__,
            )
