"""
流程图定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
from enum import Enum
from uuid import uuid4


class ElementType(str, Enum):
    """流程图元素类型"""
    FLOW = "flow"

    EVENT_START = "eventStart"
    EVENT_START_TIMER = "eventStartTimer"
    EVENT_START_CONDITIONAL = "eventStartConditional"
    EVENT_START_SIGNAL = "eventStartSignal"
    EVENT_START_ERROR = "eventStartError"
    EVENT_START_ESCALATION = "eventStartEscalation"
    EVENT_START_COMPENSATION = "eventStartCompensation"

    EVENT_END = "eventEnd"
    EVENT_END_TERMINATE = "eventEndTerminate"
    EVENT_END_ERROR = "eventEndError"
    EVENT_END_ESCALATION = "eventEndEscalation"
    EVENT_END_SIGNAL = "eventEndSignal"
    EVENT_END_COMPENSATION = "eventEndCompensation"

    EVENT_INTERMEDIATE_TIMER_CATCH = "eventIntermediateTimerCatch"
    EVENT_INTERMEDIATE_CONDITIONAL_CATCH = "eventIntermediateConditionalCatch"
    EVENT_INTERMEDIATE_MESSAGE_CATCH = "eventIntermediateMessageCatch"
    EVENT_INTERMEDIATE_SIGNAL_CATCH = "eventIntermediateSignalCatch"
    EVENT_INTERMEDIATE_SIGNAL_THROW = "eventIntermediateSignalThrow"
    EVENT_INTERMEDIATE_ESCALATION_THROW = "eventIntermediateEscalationThrow"
    EVENT_INTERMEDIATE_COMPENSATION_THROW = "eventIntermediateCompensationThrow"
    EVENT_INTERMEDIATE_LINK_THROW = "eventIntermediateLinkThrow"
    EVENT_INTERMEDIATE_LINK_CATCH = "eventIntermediateLinkCatch"

    EVENT_INTERMEDIATE_TIMER_BOUNDARY = "eventIntermediateTimerBoundary"
    EVENT_INTERMEDIATE_CONDITIONAL_BOUNDARY = "eventIntermediateConditionalBoundary"
    EVENT_INTERMEDIATE_MESSAGE_BOUNDARY = "eventIntermediateMessageBoundary"
    EVENT_INTERMEDIATE_SIGNAL_BOUNDARY = "eventIntermediateSignalBoundary"
    EVENT_INTERMEDIATE_ERROR_BOUNDARY = "eventIntermediateErrorBoundary"
    EVENT_INTERMEDIATE_ESCALATION_BOUNDARY = "eventIntermediateEscalationBoundary"
    EVENT_INTERMEDIATE_COMPENSATION_BOUNDARY = "eventIntermediateCompensationBoundary"

    GATEWAY_EXCLUSIVE = "gatewayExclusive"
    GATEWAY_INCLUSIVE = "gatewayInclusive"
    GATEWAY_PARALLEL = "gatewayParallel"
    GATEWAY_EVENT_BASED = "gatewayEventBased"

    TASK = "task"
    TASK_SCRIPT = "taskScript"
    TASK_USER = "taskUser"
    TASK_SEND_MESSAGE = "taskSendMessage"
    SUB_PROCESS = "subProcess"
    CALL_ACTIVITY = "callActivity"
    EVENT_SUB_PROCESS = "eventSubProcess"

    EVENT_START_TIMER_EVENT_SUB_PROCESS = "eventStartTimerEventSubProcess"
    EVENT_START_CONDITIONAL_EVENT_SUB_PROCESS = "eventStartConditionalEventSubProcess"
    EVENT_START_SIGNAL_EVENT_SUB_PROCESS = "eventStartSignalEventSubProcess"

    @property
    def is_event_start(self) -> bool:
        return self.value.startswith("eventStart") and not self.value.endswith("EventSubProcess")

    @property
    def is_boundary(self) -> bool:
        return self.value.endswith("Boundary")

    @property
    def is_event_sub_process_starter(self) -> bool:
        return self.value.endswith("EventSubProcess")


# 显式起始元素允许的类型
START_ELEMENT_TYPES = frozenset({
    ElementType.EVENT_START,
    ElementType.EVENT_START_CONDITIONAL,
    ElementType.EVENT_START_TIMER,
    ElementType.EVENT_START_ERROR,
    ElementType.EVENT_START_ESCALATION,
    ElementType.EVENT_START_SIGNAL,
    ElementType.EVENT_START_COMPENSATION,
})

# 活动开始前需要准备的边界事件
PENDING_BOUNDARY_TYPES = frozenset({
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_BOUNDARY,
    ElementType.EVENT_INTERMEDIATE_TIMER_BOUNDARY,
    ElementType.EVENT_INTERMEDIATE_SIGNAL_BOUNDARY,
    ElementType.EVENT_INTERMEDIATE_MESSAGE_BOUNDARY,
})

# 条件类元素（适用退避检查）
CONDITIONAL_TYPES = frozenset({
    ElementType.EVENT_START_CONDITIONAL_EVENT_SUB_PROCESS,
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_BOUNDARY,
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_CATCH,
})

# 可补偿的活动类型
COMPENSABLE_TYPES = frozenset({
    ElementType.SUB_PROCESS,
    ElementType.CALL_ACTIVITY,
    ElementType.TASK,
    ElementType.TASK_SCRIPT,
    ElementType.TASK_USER,
    ElementType.TASK_SEND_MESSAGE,
})

# 会派生子流程的活动
SUB_PROCESS_TYPES = frozenset({
    ElementType.SUB_PROCESS,
    ElementType.CALL_ACTIVITY,
    ElementType.EVENT_SUB_PROCESS,
})

# 待命状态下按需触发、不预先准备的事件子流程起始类型
ON_DEMAND_START_TYPES = frozenset({
    ElementType.EVENT_START_ERROR,
    ElementType.EVENT_START_ESCALATION,
    ElementType.EVENT_START_COMPENSATION,
})

_KNOWN_KEYS = {
    "id", "type", "nextElementIdList", "previousElementIdList", "attachedToId",
    "isForCompensation", "cancelActivity", "isInterrupting", "isMultiInstance",
    "defaultNextElementId", "flowList", "center",
}


@dataclass
class Element:
    """流程图元素（已规范化）"""
    id: str
    type: ElementType
    next_element_ids: List[str] = field(default_factory=list)
    previous_element_ids: List[str] = field(default_factory=list)
    attached_to_id: Optional[str] = None
    is_for_compensation: bool = False
    cancel_activity: bool = False
    is_interrupting: bool = False
    is_multi_instance: bool = False
    default_next_element_id: Optional[str] = None
    flow_list: List[Dict[str, Any]] = field(default_factory=list)
    center: Optional[Dict[str, float]] = None
    params: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        """获取元素的类型专属参数"""
        value = self.params.get(name)
        return default if value is None else value

    def event_start_data(self) -> Optional[Dict[str, Any]]:
        """事件子流程的开始事件定义（eventStartData，缺省时取 dataList 中的开始事件）"""
        data = self.params.get("eventStartData")
        if data:
            return data
        for item in self.params.get("dataList") or []:
            if isinstance(item, dict) and str(item.get("type", "")).startswith("eventStart"):
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.params)
        data.update({
            "id": self.id,
            "type": self.type.value,
            "nextElementIdList": list(self.next_element_ids),
            "previousElementIdList": list(self.previous_element_ids),
            "isForCompensation": self.is_for_compensation,
            "cancelActivity": self.cancel_activity,
            "isInterrupting": self.is_interrupting,
            "isMultiInstance": self.is_multi_instance,
        })
        if self.attached_to_id:
            data["attachedToId"] = self.attached_to_id
        if self.default_next_element_id:
            data["defaultNextElementId"] = self.default_next_element_id
        if self.flow_list:
            data["flowList"] = [dict(item) for item in self.flow_list]
        if self.center:
            data["center"] = dict(self.center)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Element":
        return cls(
            id=data["id"],
            type=ElementType(data["type"]),
            next_element_ids=list(data.get("nextElementIdList") or []),
            previous_element_ids=list(data.get("previousElementIdList") or []),
            attached_to_id=data.get("attachedToId"),
            is_for_compensation=bool(data.get("isForCompensation")),
            cancel_activity=bool(data.get("cancelActivity")),
            is_interrupting=bool(data.get("isInterrupting")),
            is_multi_instance=bool(data.get("isMultiInstance")),
            default_next_element_id=data.get("defaultNextElementId"),
            flow_list=[dict(item) for item in data.get("flowList") or []],
            center=dict(data["center"]) if data.get("center") else None,
            params={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )


def _center_key(item: Optional[Dict[str, Any]]) -> Tuple[float, float]:
    center = (item or {}).get("center") or {}
    return (center.get("y", 0), center.get("x", 0))


def sort_element_ids(ids: List[str], items_by_id: Dict[str, Dict[str, Any]]) -> List[str]:
    """按坐标排序（先 y 后 x），无坐标的保持原顺序"""
    if not all((items_by_id.get(i) or {}).get("center") for i in ids):
        return list(ids)
    return sorted(ids, key=lambda i: _center_key(items_by_id.get(i)))


def build_elements(items: List[Dict[str, Any]]) -> Tuple[Dict[str, Element], List[str], List[str]]:
    """
    从原始元素列表构建元素映射

    连线（flow）不作为元素，而是用于计算前后元素列表、条件分支目标与默认分支。

    Returns:
        (元素映射, 普通开始事件ID列表, 全部开始事件ID列表)
    """
    items = [item for item in items if isinstance(item, dict)]
    items_by_id = {item.get("id"): item for item in items}
    flows = [
        item for item in items
        if item.get("type") == ElementType.FLOW.value and item.get("startId") and item.get("endId")
    ]

    elements: Dict[str, Element] = {}
    event_start_ids: List[str] = []
    event_start_all_ids: List[str] = []

    for item in items:
        item_type = item.get("type")
        item_id = item.get("id")
        if item_type == ElementType.FLOW.value:
            continue

        next_ids = [flow["endId"] for flow in flows if flow["startId"] == item_id]
        previous_ids = [flow["startId"] for flow in flows if flow["endId"] == item_id]

        data = dict(item)
        data["nextElementIdList"] = sort_element_ids(next_ids, items_by_id)
        data["previousElementIdList"] = previous_ids

        if item.get("flowList"):
            flow_list = []
            for flow_data in item["flowList"]:
                flow_data = dict(flow_data)
                flow = items_by_id.get(flow_data.get("id"))
                if flow and flow.get("type") == ElementType.FLOW.value:
                    flow_data["elementId"] = flow.get("endId")
                flow_list.append(flow_data)
            data["flowList"] = flow_list

        default_flow = items_by_id.get(item.get("defaultFlowId")) if item.get("defaultFlowId") else None
        if default_flow:
            data["defaultNextElementId"] = default_flow.get("endId")

        element = Element.from_dict(data)
        if element.type == ElementType.EVENT_START:
            event_start_ids.append(item_id)
        if element.type.is_event_start:
            event_start_all_ids.append(item_id)
        elements[item_id] = element

    return elements, event_start_ids, event_start_all_ids


@dataclass
class Flowchart:
    """流程图定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    target_type: Optional[str] = None
    data_list: List[Dict[str, Any]] = field(default_factory=list)
    elements: Dict[str, Element] = field(default_factory=dict)
    event_start_ids: List[str] = field(default_factory=list)
    is_active: bool = True

    @classmethod
    def from_list(
        cls,
        items: List[Dict[str, Any]],
        flowchart_id: Optional[str] = None,
        name: str = "",
        target_type: Optional[str] = None
    ) -> "Flowchart":
        """从元素列表创建流程图"""
        elements, event_start_ids, _ = build_elements(items)
        return cls(
            id=flowchart_id or str(uuid4()),
            name=name,
            target_type=target_type,
            data_list=[dict(item) for item in items],
            elements=elements,
            event_start_ids=event_start_ids,
        )

    def get_element(self, element_id: str) -> Optional[Element]:
        return self.elements.get(element_id)

    def elements_to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {element_id: element.to_dict() for element_id, element in self.elements.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "targetType": self.target_type,
            "list": self.data_list,
            "isActive": self.is_active,
        }
