"""
存储仓库接口定义
"""
import copy
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable, Collection
from datetime import datetime

from ..models.flowchart import ElementType, Flowchart
from ..models.process import (
    Process, FlowNode, SignalListener, ProcessStatus, FlowNodeStatus,
    ACTIVE_PROCESS_STATUSES
)
from ..exceptions import FlowNodeLockedError, FlowNodeNotFoundError


# Pending 且 proceed_at 到期
PENDING_TIMER_TYPES = frozenset({
    ElementType.EVENT_INTERMEDIATE_TIMER_CATCH,
    ElementType.EVENT_INTERMEDIATE_TIMER_BOUNDARY,
})

# Pending 即可参与扫描
PENDING_ALWAYS_TYPES = frozenset({
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_CATCH,
    ElementType.EVENT_INTERMEDIATE_CONDITIONAL_BOUNDARY,
    ElementType.EVENT_INTERMEDIATE_MESSAGE_CATCH,
    ElementType.EVENT_INTERMEDIATE_MESSAGE_BOUNDARY,
    ElementType.TASK_SEND_MESSAGE,
    ElementType.EVENT_INTERMEDIATE_COMPENSATION_THROW,
    ElementType.EVENT_END_COMPENSATION,
})

# Standby 且 proceed_at 到期
STANDBY_TIMER_TYPES = frozenset({
    ElementType.EVENT_START_TIMER_EVENT_SUB_PROCESS,
})

# Standby 即可参与扫描
STANDBY_ALWAYS_TYPES = frozenset({
    ElementType.EVENT_START_CONDITIONAL_EVENT_SUB_PROCESS,
})


def is_pending_eligible(flow_node: FlowNode, now: datetime) -> bool:
    """节点是否处于等待触发、可被扫描的状态"""
    if flow_node.is_locked or flow_node.is_deleted:
        return False
    due = flow_node.proceed_at is not None and flow_node.proceed_at <= now
    if flow_node.status == FlowNodeStatus.PENDING:
        if flow_node.element_type in PENDING_TIMER_TYPES:
            return due
        return flow_node.element_type in PENDING_ALWAYS_TYPES
    if flow_node.status == FlowNodeStatus.STANDBY:
        if flow_node.element_type in STANDBY_TIMER_TYPES:
            return due
        return flow_node.element_type in STANDBY_ALWAYS_TYPES
    return False


class _Unset:
    def __repr__(self):
        return "UNSET"


UNSET: Any = _Unset()


@dataclass
class FlowNodeFilter:
    """流程节点查询条件"""
    process_id: Optional[str] = None
    statuses: Optional[Collection[FlowNodeStatus]] = None
    exclude_statuses: Optional[Collection[FlowNodeStatus]] = None
    element_types: Optional[Collection[ElementType]] = None
    exclude_element_types: Optional[Collection[ElementType]] = None
    element_id: Optional[str] = None
    previous_flow_node_id: Optional[str] = None
    # UNSET 表示不过滤；None 表示匹配空值
    divergent_flow_node_id: Any = UNSET
    # 只匹配序号不大于该值的节点
    max_number: Optional[int] = None
    include_deleted: bool = False
    order_desc: bool = False
    limit: Optional[int] = None

    def matches(self, flow_node: FlowNode) -> bool:
        if flow_node.is_deleted and not self.include_deleted:
            return False
        if self.process_id is not None and flow_node.process_id != self.process_id:
            return False
        if self.statuses is not None and flow_node.status not in self.statuses:
            return False
        if self.exclude_statuses is not None and flow_node.status in self.exclude_statuses:
            return False
        if self.element_types is not None and flow_node.element_type not in self.element_types:
            return False
        if self.exclude_element_types is not None and flow_node.element_type in self.exclude_element_types:
            return False
        if self.element_id is not None and flow_node.element_id != self.element_id:
            return False
        if self.previous_flow_node_id is not None and flow_node.previous_flow_node_id != self.previous_flow_node_id:
            return False
        if self.divergent_flow_node_id is not UNSET and flow_node.divergent_flow_node_id != self.divergent_flow_node_id:
            return False
        if self.max_number is not None and flow_node.number > self.max_number:
            return False
        return True


@dataclass
class RootCandidate:
    """并行调度候选根流程"""
    root_process_id: str
    visit_timestamp: int = 0
    number: int = 0


class ProcessRepository(ABC):
    """流程实例存储仓库接口"""

    @abstractmethod
    async def save(self, process: Process, fields: Optional[Iterable[str]] = None) -> str:
        """保存流程；指定 fields 时只更新这些字段"""
        pass

    @abstractmethod
    async def get(self, process_id: str) -> Optional[Process]:
        """获取流程"""
        pass

    @abstractmethod
    async def delete(self, process_id: str) -> bool:
        """删除流程"""
        pass

    @abstractmethod
    async def find_active_by_target(
        self,
        flowchart_id: str,
        target_type: str,
        target_id: str
    ) -> List[Process]:
        """同一流程图与目标下处于 Started/Paused 的非子流程"""
        pass

    @abstractmethod
    async def find_children(
        self,
        parent_process_id: str,
        parent_process_flow_node_id: Optional[str] = None,
        statuses: Optional[Collection[ProcessStatus]] = None
    ) -> List[Process]:
        """子流程列表"""
        pass

    @abstractmethod
    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        status: Optional[ProcessStatus] = None
    ) -> List[Process]:
        """列出流程"""
        pass

    @abstractmethod
    async def unlock_stale(self, before_timestamp: int) -> int:
        """解锁 visit_timestamp 早于给定时间的已锁流程，返回数量"""
        pass

    @abstractmethod
    async def try_lock(self, process_id: str, visit_timestamp: int) -> bool:
        """未加锁时加锁并更新 visit_timestamp，已被其他调度方锁定时返回 False"""
        pass


class FlowNodeRepository(ABC):
    """流程节点存储仓库接口"""

    @abstractmethod
    async def save(self, flow_node: FlowNode, fields: Optional[Iterable[str]] = None) -> str:
        """保存节点；新节点分配递增序号"""
        pass

    @abstractmethod
    async def get(self, flow_node_id: str) -> Optional[FlowNode]:
        """获取节点"""
        pass

    @abstractmethod
    async def delete(self, flow_node_id: str) -> bool:
        """软删除节点"""
        pass

    @abstractmethod
    async def find(self, criteria: FlowNodeFilter) -> List[FlowNode]:
        """按条件查询，按序号排序"""
        pass

    @abstractmethod
    async def count(self, criteria: FlowNodeFilter) -> int:
        """按条件计数"""
        pass

    @abstractmethod
    async def find_pending(
        self,
        now: datetime,
        limit: int,
        root_process_id: Optional[str] = None
    ) -> List[FlowNode]:
        """等待触发的节点，按序号升序"""
        pass

    @abstractmethod
    async def find_pending_roots(self, now: datetime, limit: int) -> List[RootCandidate]:
        """拥有待处理节点的根流程（未锁定且已启动）"""
        pass

    @abstractmethod
    async def lock(self, flow_node_id: str) -> FlowNode:
        """事务内读取并加锁，已锁或不存在时抛出异常"""
        pass

    @abstractmethod
    async def unlock(self, flow_node_id: str) -> None:
        """释放节点锁"""
        pass


class SignalListenerRepository(ABC):
    """信号监听存储仓库接口"""

    @abstractmethod
    async def save(self, listener: SignalListener) -> str:
        pass

    @abstractmethod
    async def get(self, listener_id: str) -> Optional[SignalListener]:
        pass

    @abstractmethod
    async def delete(self, listener_id: str) -> bool:
        pass

    @abstractmethod
    async def find(
        self,
        signal_name: Optional[str] = None,
        is_triggered: Optional[bool] = None,
        root_process_id: Optional[str] = None,
        flow_node_id: Optional[str] = None
    ) -> List[SignalListener]:
        """按条件查询监听"""
        pass

    @abstractmethod
    async def trigger(self, signal_name: str) -> int:
        """将未触发的监听标记为已触发，返回数量"""
        pass

    @abstractmethod
    async def delete_stale(self) -> int:
        """删除节点已删除或不再等待的监听"""
        pass

    @abstractmethod
    async def find_triggered_roots(self, limit: int) -> List[RootCandidate]:
        """拥有已触发监听的根流程（未锁定且已启动）"""
        pass


class FlowchartRepository(ABC):
    """流程图存储仓库接口"""

    @abstractmethod
    async def save(self, flowchart: Flowchart) -> str:
        pass

    @abstractmethod
    async def get(self, flowchart_id: str) -> Optional[Flowchart]:
        pass

    @abstractmethod
    async def list(self, offset: int = 0, limit: int = 100) -> List[Flowchart]:
        pass

    @abstractmethod
    async def delete(self, flowchart_id: str) -> bool:
        pass


@dataclass
class Storage:
    """仓库集合"""
    processes: ProcessRepository
    flow_nodes: FlowNodeRepository
    signal_listeners: SignalListenerRepository
    flowcharts: FlowchartRepository

    @classmethod
    def in_memory(cls) -> "Storage":
        db = InMemoryDatabase()
        return cls(
            processes=InMemoryProcessRepository(db),
            flow_nodes=InMemoryFlowNodeRepository(db),
            signal_listeners=InMemorySignalListenerRepository(db),
            flowcharts=InMemoryFlowchartRepository(db),
        )


# 内存实现（用于测试）
@dataclass
class InMemoryDatabase:
    """内存数据，按行保存副本以模拟数据库语义"""
    processes: Dict[str, Process] = field(default_factory=dict)
    flow_nodes: Dict[str, FlowNode] = field(default_factory=dict)
    signal_listeners: Dict[str, SignalListener] = field(default_factory=dict)
    flowcharts: Dict[str, Flowchart] = field(default_factory=dict)
    flow_node_number: int = 0


def _store(table: Dict[str, Any], entity: Any, fields: Optional[Iterable[str]]):
    existing = table.get(entity.id)
    if existing is None or fields is None:
        table[entity.id] = copy.deepcopy(entity)
        return
    for name in fields:
        setattr(existing, name, copy.deepcopy(getattr(entity, name)))


class InMemoryProcessRepository(ProcessRepository):
    """内存流程仓库实现"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def save(self, process: Process, fields: Optional[Iterable[str]] = None) -> str:
        _store(self.db.processes, process, fields)
        return process.id

    async def get(self, process_id: str) -> Optional[Process]:
        process = self.db.processes.get(process_id)
        return copy.deepcopy(process) if process else None

    async def delete(self, process_id: str) -> bool:
        return self.db.processes.pop(process_id, None) is not None

    async def find_active_by_target(
        self,
        flowchart_id: str,
        target_type: str,
        target_id: str
    ) -> List[Process]:
        return [
            copy.deepcopy(p) for p in self.db.processes.values()
            if p.flowchart_id == flowchart_id
            and p.target_type == target_type
            and p.target_id == target_id
            and p.status in ACTIVE_PROCESS_STATUSES
            and not p.is_sub_process()
        ]

    async def find_children(
        self,
        parent_process_id: str,
        parent_process_flow_node_id: Optional[str] = None,
        statuses: Optional[Collection[ProcessStatus]] = None
    ) -> List[Process]:
        result = []
        for p in self.db.processes.values():
            if p.parent_process_id != parent_process_id:
                continue
            if parent_process_flow_node_id and p.parent_process_flow_node_id != parent_process_flow_node_id:
                continue
            if statuses is not None and p.status not in statuses:
                continue
            result.append(copy.deepcopy(p))
        result.sort(key=lambda p: p.created_at)
        return result

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        status: Optional[ProcessStatus] = None
    ) -> List[Process]:
        processes = [
            p for p in self.db.processes.values()
            if status is None or p.status == status
        ]
        processes.sort(key=lambda p: p.created_at, reverse=True)
        return [copy.deepcopy(p) for p in processes[offset:offset + limit]]

    async def unlock_stale(self, before_timestamp: int) -> int:
        count = 0
        for p in self.db.processes.values():
            if p.is_locked and p.visit_timestamp < before_timestamp:
                p.is_locked = False
                count += 1
        return count

    async def try_lock(self, process_id: str, visit_timestamp: int) -> bool:
        process = self.db.processes.get(process_id)
        if not process or process.is_locked:
            return False
        process.is_locked = True
        process.visit_timestamp = visit_timestamp
        return True


class InMemoryFlowNodeRepository(FlowNodeRepository):
    """内存流程节点仓库实现"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db
        self._lock = asyncio.Lock()

    async def save(self, flow_node: FlowNode, fields: Optional[Iterable[str]] = None) -> str:
        if flow_node.id not in self.db.flow_nodes and not flow_node.number:
            self.db.flow_node_number += 1
            flow_node.number = self.db.flow_node_number
        _store(self.db.flow_nodes, flow_node, fields)
        return flow_node.id

    async def get(self, flow_node_id: str) -> Optional[FlowNode]:
        flow_node = self.db.flow_nodes.get(flow_node_id)
        return copy.deepcopy(flow_node) if flow_node else None

    async def delete(self, flow_node_id: str) -> bool:
        flow_node = self.db.flow_nodes.get(flow_node_id)
        if not flow_node:
            return False
        flow_node.is_deleted = True
        return True

    async def find(self, criteria: FlowNodeFilter) -> List[FlowNode]:
        result = [n for n in self.db.flow_nodes.values() if criteria.matches(n)]
        result.sort(key=lambda n: n.number, reverse=criteria.order_desc)
        if criteria.limit is not None:
            result = result[:criteria.limit]
        return [copy.deepcopy(n) for n in result]

    async def count(self, criteria: FlowNodeFilter) -> int:
        return sum(1 for n in self.db.flow_nodes.values() if criteria.matches(n))

    async def find_pending(
        self,
        now: datetime,
        limit: int,
        root_process_id: Optional[str] = None
    ) -> List[FlowNode]:
        result = []
        for n in self.db.flow_nodes.values():
            if not is_pending_eligible(n, now):
                continue
            if root_process_id is not None:
                process = self.db.processes.get(n.process_id)
                if not process or process.root_process_id != root_process_id:
                    continue
            result.append(n)
        result.sort(key=lambda n: n.number)
        return [copy.deepcopy(n) for n in result[:limit]]

    async def find_pending_roots(self, now: datetime, limit: int) -> List[RootCandidate]:
        groups: Dict[str, RootCandidate] = {}
        for n in self.db.flow_nodes.values():
            if not is_pending_eligible(n, now):
                continue
            process = self.db.processes.get(n.process_id)
            if not process:
                continue
            root = self.db.processes.get(process.root_process_id)
            if not root or root.is_locked or root.status != ProcessStatus.STARTED:
                continue
            candidate = groups.get(root.id)
            if candidate is None:
                groups[root.id] = RootCandidate(root.id, root.visit_timestamp, n.number)
            else:
                candidate.number = min(candidate.number, n.number)
        result = sorted(groups.values(), key=lambda c: (c.visit_timestamp, c.number))
        return result[:limit]

    async def lock(self, flow_node_id: str) -> FlowNode:
        async with self._lock:
            flow_node = self.db.flow_nodes.get(flow_node_id)
            if not flow_node or flow_node.is_deleted:
                raise FlowNodeNotFoundError(flow_node_id)
            if flow_node.is_locked:
                raise FlowNodeLockedError(flow_node_id)
            flow_node.is_locked = True
            return copy.deepcopy(flow_node)

    async def unlock(self, flow_node_id: str) -> None:
        flow_node = self.db.flow_nodes.get(flow_node_id)
        if flow_node:
            flow_node.is_locked = False


class InMemorySignalListenerRepository(SignalListenerRepository):
    """内存信号监听仓库实现"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def save(self, listener: SignalListener) -> str:
        self.db.signal_listeners[listener.id] = copy.deepcopy(listener)
        return listener.id

    async def get(self, listener_id: str) -> Optional[SignalListener]:
        listener = self.db.signal_listeners.get(listener_id)
        return copy.deepcopy(listener) if listener else None

    async def delete(self, listener_id: str) -> bool:
        return self.db.signal_listeners.pop(listener_id, None) is not None

    async def find(
        self,
        signal_name: Optional[str] = None,
        is_triggered: Optional[bool] = None,
        root_process_id: Optional[str] = None,
        flow_node_id: Optional[str] = None
    ) -> List[SignalListener]:
        result = []
        for listener in self.db.signal_listeners.values():
            if signal_name is not None and listener.signal_name != signal_name:
                continue
            if is_triggered is not None and listener.is_triggered != is_triggered:
                continue
            if root_process_id is not None and listener.root_process_id != root_process_id:
                continue
            if flow_node_id is not None and listener.flow_node_id != flow_node_id:
                continue
            result.append(copy.deepcopy(listener))
        result.sort(key=lambda listener: listener.created_at)
        return result

    async def trigger(self, signal_name: str) -> int:
        count = 0
        for listener in self.db.signal_listeners.values():
            if listener.signal_name == signal_name and not listener.is_triggered:
                listener.is_triggered = True
                count += 1
        return count

    async def delete_stale(self) -> int:
        waiting = {FlowNodeStatus.STANDBY, FlowNodeStatus.CREATED, FlowNodeStatus.PENDING}
        stale = []
        for listener in self.db.signal_listeners.values():
            flow_node = self.db.flow_nodes.get(listener.flow_node_id)
            if not flow_node or flow_node.is_deleted or flow_node.status not in waiting:
                stale.append(listener.id)
        for listener_id in stale:
            del self.db.signal_listeners[listener_id]
        return len(stale)

    async def find_triggered_roots(self, limit: int) -> List[RootCandidate]:
        groups: Dict[str, RootCandidate] = {}
        for listener in self.db.signal_listeners.values():
            if not listener.is_triggered:
                continue
            root = self.db.processes.get(listener.root_process_id)
            if not root or root.is_locked or root.status != ProcessStatus.STARTED:
                continue
            flow_node = self.db.flow_nodes.get(listener.flow_node_id)
            number = flow_node.number if flow_node else 0
            candidate = groups.get(root.id)
            if candidate is None:
                groups[root.id] = RootCandidate(root.id, root.visit_timestamp, number)
            else:
                candidate.number = min(candidate.number, number)
        result = sorted(groups.values(), key=lambda c: (c.visit_timestamp, c.number))
        return result[:limit]


class InMemoryFlowchartRepository(FlowchartRepository):
    """内存流程图仓库实现"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def save(self, flowchart: Flowchart) -> str:
        self.db.flowcharts[flowchart.id] = copy.deepcopy(flowchart)
        return flowchart.id

    async def get(self, flowchart_id: str) -> Optional[Flowchart]:
        flowchart = self.db.flowcharts.get(flowchart_id)
        return copy.deepcopy(flowchart) if flowchart else None

    async def list(self, offset: int = 0, limit: int = 100) -> List[Flowchart]:
        flowcharts = list(self.db.flowcharts.values())[offset:offset + limit]
        return [copy.deepcopy(f) for f in flowcharts]

    async def delete(self, flowchart_id: str) -> bool:
        return self.db.flowcharts.pop(flowchart_id, None) is not None
