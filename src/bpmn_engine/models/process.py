"""
流程实例与流程节点模型
"""
from dataclasses import dataclass, field, fields
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime
from uuid import uuid4

from .flowchart import Element, ElementType, sort_element_ids


class ProcessStatus(str, Enum):
    """流程实例状态"""
    CREATED = "Created"
    STARTED = "Started"
    PAUSED = "Paused"
    ENDED = "Ended"
    INTERRUPTED = "Interrupted"
    STOPPED = "Stopped"


class FlowNodeStatus(str, Enum):
    """流程节点（令牌）状态"""
    CREATED = "Created"
    IN_PROCESS = "InProcess"
    PENDING = "Pending"
    STANDBY = "Standby"
    PROCESSED = "Processed"
    REJECTED = "Rejected"
    FAILED = "Failed"
    INTERRUPTED = "Interrupted"


ACTIVE_PROCESS_STATUSES = frozenset({ProcessStatus.STARTED, ProcessStatus.PAUSED})

FLOW_NODE_TERMINAL_STATUSES = frozenset({
    FlowNodeStatus.PROCESSED,
    FlowNodeStatus.REJECTED,
    FlowNodeStatus.FAILED,
    FlowNodeStatus.INTERRUPTED,
})

FLOW_NODE_WAITING_STATUSES = frozenset({FlowNodeStatus.PENDING, FlowNodeStatus.STANDBY})


def to_timestamp_ms(value: datetime) -> int:
    """datetime 转毫秒时间戳（按 UTC 解释朴素时间）"""
    epoch = datetime(1970, 1, 1)
    return int((value.replace(tzinfo=None) - epoch).total_seconds() * 1000)


@dataclass
class Target:
    """流程绑定的业务对象"""
    type: str
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)


@dataclass
class FlowNodeData:
    """流程节点的类型化数据"""
    # 子流程
    sub_process_id: Optional[str] = None
    # 事件子流程待命数据
    sub_process_element_id: Optional[str] = None
    sub_process_target: Optional[str] = None
    sub_process_is_interrupting: Optional[bool] = None
    sub_process_title: Optional[str] = None
    sub_process_start_data: Optional[Dict[str, Any]] = None
    # 错误
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_triggered: Optional[bool] = None
    caught_error_code: Optional[str] = None
    caught_error_message: Optional[str] = None
    is_error_handler: Optional[bool] = None
    code: Optional[str] = None
    message: Optional[str] = None
    # 升级
    caught_escalation_code: Optional[str] = None
    # 补偿
    compensated_flow_node_id: Optional[str] = None
    compensation_flow_node_ids: Optional[List[str]] = None
    # 条件边界事件
    is_opposite: Optional[bool] = None
    # 消息
    checked_at: Optional[datetime] = None
    # 用户任务
    user_task_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FlowNodeData":
        data = data or {}
        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in names}
        if isinstance(values.get("checked_at"), str):
            values["checked_at"] = datetime.fromisoformat(values["checked_at"])
        return cls(**values)

    def copy(self) -> "FlowNodeData":
        return FlowNodeData.from_dict(self.to_dict())


@dataclass
class Process:
    """流程实例"""
    id: str = field(default_factory=lambda: str(uuid4()))
    flowchart_id: Optional[str] = None
    name: str = ""
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    status: ProcessStatus = ProcessStatus.CREATED
    flowchart_elements: Dict[str, Element] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    created_entities_data: Dict[str, Any] = field(default_factory=dict)
    start_element_id: Optional[str] = None
    parent_process_id: Optional[str] = None
    parent_process_flow_node_id: Optional[str] = None
    root_process_id: Optional[str] = None
    is_locked: bool = False
    visit_timestamp: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.root_process_id:
            self.root_process_id = self.id

    def is_sub_process(self) -> bool:
        """是否为子流程"""
        return bool(self.parent_process_id and self.parent_process_flow_node_id)

    def is_active(self) -> bool:
        return self.status in ACTIVE_PROCESS_STATUSES

    def get_element_ids(self) -> List[str]:
        """元素ID列表（按坐标排序）"""
        items = {
            element_id: {"center": element.center}
            for element_id, element in self.flowchart_elements.items()
        }
        return sort_element_ids(list(self.flowchart_elements.keys()), items)

    def get_element(self, element_id: str) -> Optional[Element]:
        return self.flowchart_elements.get(element_id)

    def get_attached_element_ids(self, flow_node: "FlowNode") -> List[str]:
        """附着在该节点所在活动上的边界事件ID"""
        return [
            element_id for element_id in self.get_element_ids()
            if self.flowchart_elements[element_id].attached_to_id == flow_node.element_id
        ]

    def update_from(self, other: "Process"):
        """用存储中的最新值刷新自身"""
        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))


@dataclass
class FlowNode:
    """流程节点（令牌）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    process_id: Optional[str] = None
    flowchart_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    status: FlowNodeStatus = FlowNodeStatus.CREATED
    element_id: Optional[str] = None
    element_type: Optional[ElementType] = None
    element_data: Optional[Element] = None
    previous_flow_node_id: Optional[str] = None
    previous_flow_node_element_type: Optional[str] = None
    divergent_flow_node_id: Optional[str] = None
    number: int = 0
    is_locked: bool = False
    data: FlowNodeData = field(default_factory=FlowNodeData)
    proceed_at: Optional[datetime] = None
    deferred_at: Optional[datetime] = None
    is_deferred: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None
    is_deleted: bool = False

    def is_terminal(self) -> bool:
        return self.status in FLOW_NODE_TERMINAL_STATUSES

    def is_active(self) -> bool:
        """非终态且非待命"""
        return not self.is_terminal() and self.status != FlowNodeStatus.STANDBY

    def get_element_attribute(self, name: str, default: Any = None) -> Any:
        if not self.element_data:
            return default
        return self.element_data.get(name, default)

    def update_from(self, other: "FlowNode"):
        """用存储中的最新值刷新自身"""
        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))


@dataclass
class SignalListener:
    """信号监听注册"""
    id: str = field(default_factory=lambda: str(uuid4()))
    signal_name: str = ""
    flow_node_id: Optional[str] = None
    process_id: Optional[str] = None
    root_process_id: Optional[str] = None
    is_triggered: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
