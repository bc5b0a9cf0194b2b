"""
等待节点扫描器与信号投递
"""
import logging
from typing import Optional, TYPE_CHECKING

from ..models.flowchart import CONDITIONAL_TYPES
from ..models.process import FlowNode, SignalListener

if TYPE_CHECKING:
    from .manager import ProcessManager


logger = logging.getLogger(__name__)


class PendingFlowScanner:
    """
    等待节点扫描器

    按序号顺序找出到期或需要重新检查的等待节点并恢复执行。
    条件类节点在宽限窗口（默认 6 小时）之后按重检间隔（默认 10 分钟）退避。
    单个节点的异常只记录日志，不影响其他节点。
    """

    def __init__(self, manager: "ProcessManager"):
        self.manager = manager

    @property
    def config(self):
        return self.manager.config

    async def process_pending_flows(self, root_process_id: Optional[str] = None) -> int:
        """扫描并恢复等待节点，返回恢复的节点数"""
        manager = self.manager
        flow_nodes = await manager.storage.flow_nodes.find_pending(
            manager.now(),
            self.config.pending_batch_size,
            root_process_id
        )
        logger.debug(f"Found {len(flow_nodes)} pending flow nodes")

        proceeded = 0
        for flow_node in flow_nodes:
            try:
                if not self.check_pending_flow(flow_node):
                    continue
                await self.control_defer_pending_flow(flow_node)
                if await manager.proceed_pending_flow(flow_node):
                    proceeded += 1
            except Exception as e:
                logger.error(f"Failed to proceed pending flow node {flow_node.id}: {e}", exc_info=True)

        await self.cleanup_signal_listeners()
        await self.process_triggered_signals(root_process_id)
        return proceeded

    def check_pending_flow(self, flow_node: FlowNode) -> bool:
        """条件类节点在退避期内跳过"""
        if flow_node.element_type not in CONDITIONAL_TYPES:
            return True
        if not flow_node.is_deferred or not flow_node.deferred_at:
            return True
        return flow_node.deferred_at <= self.manager.now() - self.config.pending_defer_interval_period

    async def control_defer_pending_flow(self, flow_node: FlowNode):
        """更新条件类节点的退避状态"""
        if flow_node.element_type not in CONDITIONAL_TYPES:
            return

        now = self.manager.now()
        period = (
            self.config.pending_defer_interval_period
            if flow_node.deferred_at
            else self.config.pending_defer_period
        )
        start = flow_node.deferred_at or flow_node.created_at

        if start > now - period:
            if flow_node.deferred_at and not flow_node.is_deferred:
                flow_node.is_deferred = True
                await self.manager.save_flow_node(flow_node, ["is_deferred"])
            return

        flow_node.deferred_at = now
        flow_node.is_deferred = True
        await self.manager.save_flow_node(flow_node, ["deferred_at", "is_deferred"])

    # 信号

    async def subscribe(self, signal_name: str, flow_node_id: str) -> SignalListener:
        """为等待节点注册信号监听"""
        manager = self.manager
        flow_node = await manager.get_flow_node(flow_node_id)
        process = await manager.get_process(flow_node.process_id) if flow_node else None

        listener = SignalListener(
            signal_name=signal_name,
            flow_node_id=flow_node_id,
            process_id=flow_node.process_id if flow_node else None,
            root_process_id=process.root_process_id if process else None,
            created_at=manager.now()
        )
        await manager.storage.signal_listeners.save(listener)
        logger.debug(f"Flow node {flow_node_id} subscribed to signal '{signal_name}'")
        return listener

    async def trigger_signal(self, signal_name: str) -> int:
        """标记监听为已触发，由下一次扫描投递"""
        count = await self.manager.storage.signal_listeners.trigger(signal_name)
        logger.info(f"Signal '{signal_name}' triggered {count} listeners")
        return count

    async def broadcast_signal(self, signal_name: str) -> int:
        """立即投递信号给所有未触发的监听"""
        manager = self.manager
        listeners = await manager.storage.signal_listeners.find(signal_name=signal_name, is_triggered=False)
        for listener in listeners:
            await manager.storage.signal_listeners.delete(listener.id)

        delivered = 0
        for listener in listeners:
            if await self._deliver(listener):
                delivered += 1

        logger.info(f"Signal '{signal_name}' broadcast to {delivered} of {len(listeners)} listeners")
        return delivered

    async def cleanup_signal_listeners(self) -> int:
        """删除节点已不再等待的监听"""
        count = await self.manager.storage.signal_listeners.delete_stale()
        if count:
            logger.debug(f"Deleted {count} stale signal listeners")
        return count

    async def process_triggered_signals(self, root_process_id: Optional[str] = None) -> int:
        """消费已触发的监听"""
        manager = self.manager
        listeners = await manager.storage.signal_listeners.find(
            is_triggered=True,
            root_process_id=root_process_id
        )

        delivered = 0
        for listener in listeners:
            await manager.storage.signal_listeners.delete(listener.id)
            if await self._deliver(listener):
                delivered += 1
        return delivered

    async def _deliver(self, listener: SignalListener) -> bool:
        flow_node = await self.manager.get_flow_node(listener.flow_node_id)
        if not flow_node or flow_node.is_deleted:
            logger.warning(
                f"Flow node {listener.flow_node_id} of signal listener {listener.id} "
                f"('{listener.signal_name}') not found"
            )
            return False

        try:
            return await self.manager.proceed_pending_flow(flow_node)
        except Exception as e:
            logger.error(
                f"Failed to proceed flow node {flow_node.id} on signal '{listener.signal_name}': {e}",
                exc_info=True
            )
            return False
