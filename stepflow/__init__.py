"""stepflow: Durable, step-by-step workflow execution."""

from .config import StepflowConfig, load_config
from .control import ExecutionControl
from .coordinator import DeliveryOutcome, ExecutionCoordinator, ExecutionWorker
from .credentials import ConnectionConfig, StaticCredentialResolver
from .models import ExecutionStatus, Workflow, WorkflowExecution, WorkflowStep
from .persistence import get_store
from .queues import get_queue
from .runner import StepRunner

__version__ = "0.1.0"
__all__ = [
    "ConnectionConfig",
    "DeliveryOutcome",
    "ExecutionControl",
    "ExecutionCoordinator",
    "ExecutionStatus",
    "ExecutionWorker",
    "StaticCredentialResolver",
    "StepRunner",
    "StepflowConfig",
    "Workflow",
    "WorkflowExecution",
    "WorkflowStep",
    "get_queue",
    "get_store",
    "load_config",
]
