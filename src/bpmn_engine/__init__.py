"""
BPMN Process Engine - 流程执行引擎
"""

__version__ = "1.0.0"

from .config import EngineConfig
from .core.manager import ProcessManager
from .core.parser import FlowchartParser
from .core.coordinator import ParallelCoordinator
from .models.flowchart import Flowchart, Element, ElementType
from .models.process import Process, FlowNode, Target, ProcessStatus, FlowNodeStatus
from .storage.repository import Storage

__all__ = [
    "EngineConfig",
    "ProcessManager",
    "FlowchartParser",
    "ParallelCoordinator",
    "Flowchart",
    "Element",
    "ElementType",
    "Process",
    "FlowNode",
    "Target",
    "ProcessStatus",
    "FlowNodeStatus",
    "Storage"
]
