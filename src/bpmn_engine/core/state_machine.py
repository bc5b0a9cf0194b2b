"""
流程节点状态机与加锁原语
"""
import logging
from contextlib import asynccontextmanager
from typing import Dict, FrozenSet, AsyncIterator

from ..models.process import FlowNode, FlowNodeStatus, FLOW_NODE_TERMINAL_STATUSES
from ..storage.repository import FlowNodeRepository
from ..exceptions import StateTransitionError


logger = logging.getLogger(__name__)


_TERMINAL = FLOW_NODE_TERMINAL_STATUSES

# 合法的状态转换
TRANSITIONS: Dict[FlowNodeStatus, FrozenSet[FlowNodeStatus]] = {
    FlowNodeStatus.CREATED: frozenset({
        FlowNodeStatus.IN_PROCESS,
        FlowNodeStatus.PENDING,
        FlowNodeStatus.STANDBY,
    }) | _TERMINAL,
    FlowNodeStatus.IN_PROCESS: frozenset({FlowNodeStatus.IN_PROCESS}) | _TERMINAL,
    FlowNodeStatus.PENDING: frozenset({
        FlowNodeStatus.IN_PROCESS,
        FlowNodeStatus.PENDING,
    }) | _TERMINAL,
    FlowNodeStatus.STANDBY: frozenset({
        FlowNodeStatus.IN_PROCESS,
        FlowNodeStatus.STANDBY,
    }) | _TERMINAL,
}


def can_transition(current: FlowNodeStatus, target: FlowNodeStatus) -> bool:
    """检查状态转换是否合法"""
    if current in _TERMINAL:
        return current == target
    return target in TRANSITIONS.get(current, frozenset())


def transition(flow_node: FlowNode, target: FlowNodeStatus) -> bool:
    """
    转换节点状态

    Returns:
        bool: 状态是否发生变化；终态重复设置为同一终态时返回 False
    """
    current = flow_node.status
    if current in _TERMINAL and current == target:
        logger.debug(f"Flow node {flow_node.id} is already {current.value}")
        return False

    if not can_transition(current, target):
        raise StateTransitionError(
            current.value,
            target.value,
            f"flow node '{flow_node.id}' ({flow_node.element_type.value if flow_node.element_type else '?'})"
        )

    flow_node.status = target
    return current != target


class FlowNodeLocker:
    """流程节点行锁"""

    def __init__(self, flow_nodes: FlowNodeRepository):
        self.flow_nodes = flow_nodes

    async def get_and_lock_flow_node_by_id(self, flow_node_id: str) -> FlowNode:
        """读取并加锁；节点不存在或已被锁定时抛出 FlowNodeLockError"""
        flow_node = await self.flow_nodes.lock(flow_node_id)
        logger.debug(f"Locked flow node {flow_node_id}")
        return flow_node

    async def unlock_flow_node(self, flow_node: FlowNode):
        """释放节点锁"""
        await self.flow_nodes.unlock(flow_node.id)
        flow_node.is_locked = False
        logger.debug(f"Unlocked flow node {flow_node.id}")

    @asynccontextmanager
    async def locked(self, flow_node_id: str) -> AsyncIterator[FlowNode]:
        """加锁上下文，任何退出路径都会解锁"""
        flow_node = await self.get_and_lock_flow_node_by_id(flow_node_id)
        try:
            yield flow_node
        finally:
            await self.unlock_flow_node(flow_node)
