"""Core engine components"""

from .state_machine import transition, can_transition, FlowNodeLocker
from .parser import FlowchartParser
from .conditions import ConditionEvaluator
from .actions import ActionRegistry, ActionContext
from .manager import ProcessManager
from .propagator import Propagator
from .scanner import PendingFlowScanner
from .coordinator import ParallelCoordinator, ProcessRootProcessFlowsJob, PROCESS_ROOT_PROCESS_FLOWS_JOB

__all__ = [
    "transition",
    "can_transition",
    "FlowNodeLocker",
    "FlowchartParser",
    "ConditionEvaluator",
    "ActionRegistry",
    "ActionContext",
    "ProcessManager",
    "Propagator",
    "PendingFlowScanner",
    "ParallelCoordinator",
    "ProcessRootProcessFlowsJob",
    "PROCESS_ROOT_PROCESS_FLOWS_JOB"
]
