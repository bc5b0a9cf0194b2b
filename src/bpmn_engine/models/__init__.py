"""Flowchart, process and flow node models"""

from .flowchart import (
    ElementType, Element, Flowchart, build_elements,
    START_ELEMENT_TYPES, PENDING_BOUNDARY_TYPES, CONDITIONAL_TYPES,
    COMPENSABLE_TYPES, SUB_PROCESS_TYPES, ON_DEMAND_START_TYPES
)
from .process import (
    Process, FlowNode, FlowNodeData, SignalListener, Target,
    ProcessStatus, FlowNodeStatus, ACTIVE_PROCESS_STATUSES,
    FLOW_NODE_TERMINAL_STATUSES, FLOW_NODE_WAITING_STATUSES, to_timestamp_ms
)

__all__ = [
    "ElementType",
    "Element",
    "Flowchart",
    "build_elements",
    "START_ELEMENT_TYPES",
    "PENDING_BOUNDARY_TYPES",
    "CONDITIONAL_TYPES",
    "COMPENSABLE_TYPES",
    "SUB_PROCESS_TYPES",
    "ON_DEMAND_START_TYPES",
    "Process",
    "FlowNode",
    "FlowNodeData",
    "SignalListener",
    "Target",
    "ProcessStatus",
    "FlowNodeStatus",
    "ACTIVE_PROCESS_STATUSES",
    "FLOW_NODE_TERMINAL_STATUSES",
    "FLOW_NODE_WAITING_STATUSES",
    "to_timestamp_ms"
]
