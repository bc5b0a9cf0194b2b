"""Storage and repository interfaces"""

from .repository import (
    Storage,
    ProcessRepository,
    FlowNodeRepository,
    SignalListenerRepository,
    FlowchartRepository,
    FlowNodeFilter,
    RootCandidate,
    InMemoryDatabase,
    InMemoryProcessRepository,
    InMemoryFlowNodeRepository,
    InMemorySignalListenerRepository,
    InMemoryFlowchartRepository
)

__all__ = [
    "Storage",
    "ProcessRepository",
    "FlowNodeRepository",
    "SignalListenerRepository",
    "FlowchartRepository",
    "FlowNodeFilter",
    "RootCandidate",
    "InMemoryDatabase",
    "InMemoryProcessRepository",
    "InMemoryFlowNodeRepository",
    "InMemorySignalListenerRepository",
    "InMemoryFlowchartRepository"
]
