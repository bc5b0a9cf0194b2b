"""Element implementations"""

from .registry import ElementRegistry
from .base import BaseElement, INHERIT
from .activities import (
    Activity, Task, TaskScript, TaskUser, TaskSendMessage,
    SubProcess, CallActivity, EventSubProcess
)
from .gateways import (
    Gateway, GatewayExclusive, GatewayInclusive, GatewayParallel, GatewayEventBased
)
from .events import (
    Event, EventStart, EventEnd, EventEndTerminate, EventEndError, EventEndEscalation,
    EventEndSignal, EventEndCompensation,
    EventIntermediateTimerCatch, EventIntermediateTimerBoundary,
    EventIntermediateConditionalCatch, EventIntermediateConditionalBoundary,
    EventIntermediateMessageCatch, EventIntermediateMessageBoundary,
    EventIntermediateSignalCatch, EventIntermediateSignalBoundary,
    EventIntermediateSignalThrow, EventIntermediateEscalationThrow,
    EventIntermediateCompensationThrow,
    EventIntermediateErrorBoundary, EventIntermediateEscalationBoundary,
    EventIntermediateLinkThrow, EventIntermediateLinkCatch,
    EventStartTimerEventSubProcess, EventStartConditionalEventSubProcess,
    EventStartSignalEventSubProcess
)
from ..models.flowchart import ElementType


_BUILTIN_IMPLEMENTATIONS = {
    ElementType.EVENT_START: EventStart,
    ElementType.EVENT_START_TIMER: EventStart,
    ElementType.EVENT_START_CONDITIONAL: EventStart,
    ElementType.EVENT_START_SIGNAL: EventStart,
    ElementType.EVENT_START_ERROR: EventStart,
    ElementType.EVENT_START_ESCALATION: EventStart,
    ElementType.EVENT_START_COMPENSATION: EventStart,

    ElementType.EVENT_END: EventEnd,
    ElementType.EVENT_END_TERMINATE: EventEndTerminate,
    ElementType.EVENT_END_ERROR: EventEndError,
    ElementType.EVENT_END_ESCALATION: EventEndEscalation,
    ElementType.EVENT_END_SIGNAL: EventEndSignal,
    ElementType.EVENT_END_COMPENSATION: EventEndCompensation,

    ElementType.EVENT_INTERMEDIATE_TIMER_CATCH: EventIntermediateTimerCatch,
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_CATCH: EventIntermediateConditionalCatch,
    ElementType.EVENT_INTERMEDIATE_MESSAGE_CATCH: EventIntermediateMessageCatch,
    ElementType.EVENT_INTERMEDIATE_SIGNAL_CATCH: EventIntermediateSignalCatch,
    ElementType.EVENT_INTERMEDIATE_SIGNAL_THROW: EventIntermediateSignalThrow,
    ElementType.EVENT_INTERMEDIATE_ESCALATION_THROW: EventIntermediateEscalationThrow,
    ElementType.EVENT_INTERMEDIATE_COMPENSATION_THROW: EventIntermediateCompensationThrow,
    ElementType.EVENT_INTERMEDIATE_LINK_THROW: EventIntermediateLinkThrow,
    ElementType.EVENT_INTERMEDIATE_LINK_CATCH: EventIntermediateLinkCatch,

    ElementType.EVENT_INTERMEDIATE_TIMER_BOUNDARY: EventIntermediateTimerBoundary,
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_BOUNDARY: EventIntermediateConditionalBoundary,
    ElementType.EVENT_INTERMEDIATE_MESSAGE_BOUNDARY: EventIntermediateMessageBoundary,
    ElementType.EVENT_INTERMEDIATE_SIGNAL_BOUNDARY: EventIntermediateSignalBoundary,
    ElementType.EVENT_INTERMEDIATE_ERROR_BOUNDARY: EventIntermediateErrorBoundary,
    ElementType.EVENT_INTERMEDIATE_ESCALATION_BOUNDARY: EventIntermediateEscalationBoundary,

    ElementType.GATEWAY_EXCLUSIVE: GatewayExclusive,
    ElementType.GATEWAY_INCLUSIVE: GatewayInclusive,
    ElementType.GATEWAY_PARALLEL: GatewayParallel,
    ElementType.GATEWAY_EVENT_BASED: GatewayEventBased,

    ElementType.TASK: Task,
    ElementType.TASK_SCRIPT: TaskScript,
    ElementType.TASK_USER: TaskUser,
    ElementType.TASK_SEND_MESSAGE: TaskSendMessage,
    ElementType.SUB_PROCESS: SubProcess,
    ElementType.CALL_ACTIVITY: CallActivity,
    ElementType.EVENT_SUB_PROCESS: EventSubProcess,

    ElementType.EVENT_START_TIMER_EVENT_SUB_PROCESS: EventStartTimerEventSubProcess,
    ElementType.EVENT_START_CONDITIONAL_EVENT_SUB_PROCESS: EventStartConditionalEventSubProcess,
    ElementType.EVENT_START_SIGNAL_EVENT_SUB_PROCESS: EventStartSignalEventSubProcess,
}

for _element_type, _implementation in _BUILTIN_IMPLEMENTATIONS.items():
    ElementRegistry.register_builtin(_element_type, _implementation)


__all__ = [
    "ElementRegistry",
    "BaseElement",
    "INHERIT",
    "Activity",
    "Task",
    "TaskScript",
    "TaskUser",
    "TaskSendMessage",
    "SubProcess",
    "CallActivity",
    "EventSubProcess",
    "Gateway",
    "GatewayExclusive",
    "GatewayInclusive",
    "GatewayParallel",
    "GatewayEventBased",
    "Event",
    "EventStart",
    "EventEnd",
    "EventEndTerminate",
    "EventEndError",
    "EventEndEscalation",
    "EventEndSignal",
    "EventEndCompensation",
    "EventIntermediateTimerCatch",
    "EventIntermediateTimerBoundary",
    "EventIntermediateConditionalCatch",
    "EventIntermediateConditionalBoundary",
    "EventIntermediateMessageCatch",
    "EventIntermediateMessageBoundary",
    "EventIntermediateSignalCatch",
    "EventIntermediateSignalBoundary",
    "EventIntermediateSignalThrow",
    "EventIntermediateEscalationThrow",
    "EventIntermediateCompensationThrow",
    "EventIntermediateErrorBoundary",
    "EventIntermediateEscalationBoundary",
    "EventIntermediateLinkThrow",
    "EventIntermediateLinkCatch",
    "EventStartTimerEventSubProcess",
    "EventStartConditionalEventSubProcess",
    "EventStartSignalEventSubProcess",
]
