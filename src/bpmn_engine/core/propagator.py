"""
错误、升级与补偿的传播
"""
import logging
from typing import Optional, List, Tuple, TYPE_CHECKING

from ..models.flowchart import ElementType, COMPENSABLE_TYPES, SUB_PROCESS_TYPES
from ..models.process import (
    Process, FlowNode, Target, ProcessStatus, FlowNodeStatus, ACTIVE_PROCESS_STATUSES
)
from ..storage.repository import FlowNodeFilter
from ..exceptions import ProcessNotActiveError

if TYPE_CHECKING:
    from .manager import ProcessManager


logger = logging.getLogger(__name__)


def match_code(candidates: List[Tuple[str, Optional[str]]], code: Optional[str]) -> Optional[str]:
    """
    按代码匹配处理器

    未给出代码时只匹配无代码的处理器；给出代码时精确匹配优先，
    第一个无代码的处理器作为兜底。
    """
    fallback = None
    for item_id, item_code in candidates:
        if not code:
            if not item_code:
                return item_id
            continue
        if item_code == code:
            return item_id
        if not item_code and fallback is None:
            fallback = item_id
    return fallback


class Propagator:
    """错误 / 升级 / 补偿传播器"""

    def __init__(self, manager: "ProcessManager"):
        self.manager = manager

    # 错误

    async def end_process_with_error(
        self,
        process: Process,
        code: Optional[str] = None,
        message: Optional[str] = None
    ):
        """以错误结束流程并向上传播"""
        manager = self.manager
        await manager.reject_active_flows(process)
        await manager.refresh_process(process)

        if not process.is_active():
            raise ProcessNotActiveError(process.id, process.status.value, "can't be ended with error")

        await manager.interrupt_sub_processes(process)

        process.status = ProcessStatus.ENDED
        process.ended_at = manager.now()
        await manager.save_process(process, ["status", "ended_at"])
        logger.info(f"Ended process {process.id} with error '{code}'")

        await self.trigger_error(process, code, message)

    async def trigger_error(
        self,
        process: Process,
        code: Optional[str] = None,
        message: Optional[str] = None,
        skip_handler: bool = False
    ):
        """交给同流程的错误事件子流程处理，否则传给父流程的活动节点"""
        manager = self.manager

        if not skip_handler:
            target = await manager.get_target(process)
            handler = None
            if target:
                handler = await self.prepare_error_event_sub_process_flow_node(target, process, code)
            if handler:
                handler.data.caught_error_code = code
                handler.data.caught_error_message = message
                await manager.save_flow_node(handler, ["data"])
                logger.info(f"Error '{code}' in process {process.id} caught by event sub-process {handler.element_id}")
                await manager.process_prepared_flow_node(target, handler, process)
                return

        if not process.parent_process_flow_node_id:
            logger.info(f"Error '{code}' in process {process.id} is not handled")
            return

        parent_flow_node = await manager.get_flow_node(process.parent_process_flow_node_id)
        if not parent_flow_node:
            logger.warning(
                f"Parent flow node {process.parent_process_flow_node_id} of process {process.id} not found"
            )
            return

        parent_flow_node.data.error_code = code
        parent_flow_node.data.error_message = message
        parent_flow_node.data.error_triggered = True
        await manager.save_flow_node(parent_flow_node, ["data"])

        if parent_flow_node.element_type == ElementType.EVENT_SUB_PROCESS:
            start_data = parent_flow_node.element_data.event_start_data() or {}
            if parent_flow_node.data.is_error_handler or start_data.get("isInterrupting"):
                await manager.set_flow_node_status(parent_flow_node, FlowNodeStatus.PROCESSED)
                parent_process = await manager.get_process(parent_flow_node.process_id)
                if parent_process:
                    await self.trigger_error(parent_process, code, message, skip_handler=True)
                return

        await manager.fail_flow(parent_flow_node)

    def _find_event_sub_process(
        self,
        process: Process,
        start_type: ElementType,
        code_attribute: str,
        code: Optional[str]
    ) -> Optional[str]:
        candidates = []
        for element_id in process.get_element_ids():
            element = process.get_element(element_id)
            if element.type != ElementType.EVENT_SUB_PROCESS:
                continue
            start_data = element.event_start_data()
            if not start_data or start_data.get("type") != start_type.value:
                continue
            candidates.append((element_id, start_data.get(code_attribute)))
        return match_code(candidates, code)

    def _find_boundary(
        self,
        process: Process,
        activity_flow_node: FlowNode,
        boundary_type: ElementType,
        code_attribute: str,
        code: Optional[str]
    ) -> Optional[str]:
        candidates = []
        for element_id in process.get_attached_element_ids(activity_flow_node):
            element = process.get_element(element_id)
            if element.type == boundary_type:
                candidates.append((element_id, element.get(code_attribute)))
        return match_code(candidates, code)

    async def prepare_error_event_sub_process_flow_node(
        self,
        target: Target,
        process: Process,
        code: Optional[str] = None
    ) -> Optional[FlowNode]:
        element_id = self._find_event_sub_process(process, ElementType.EVENT_START_ERROR, "errorCode", code)
        if not element_id:
            return None

        flow_node = await self.manager.prepare_flow(target, process, element_id, allow_ended_process=True)
        if flow_node:
            flow_node.data.is_error_handler = True
            await self.manager.save_flow_node(flow_node, ["data"])
        return flow_node

    async def prepare_boundary_error_flow_node(
        self,
        target: Target,
        activity_flow_node: FlowNode,
        process: Process,
        code: Optional[str] = None
    ) -> Optional[FlowNode]:
        element_id = self._find_boundary(
            process, activity_flow_node, ElementType.EVENT_INTERMEDIATE_ERROR_BOUNDARY, "errorCode", code
        )
        if not element_id:
            return None

        return await self.manager.prepare_flow(
            target,
            process,
            element_id,
            previous_flow_node_id=activity_flow_node.id,
            previous_flow_node_element_type=activity_flow_node.element_type.value
        )

    # 升级

    async def escalate(self, process: Process, code: Optional[str] = None):
        """升级：交给升级事件子流程，否则交给父活动的升级边界事件"""
        manager = self.manager
        await manager.refresh_process(process)
        if not process.is_active():
            raise ProcessNotActiveError(process.id, process.status.value, "can't escalate")

        target = await manager.get_target(process)
        element_id = self._find_event_sub_process(
            process, ElementType.EVENT_START_ESCALATION, "escalationCode", code
        )
        if element_id:
            flow_node = await manager.prepare_flow(target, process, element_id, allow_ended_process=True)
            if not flow_node:
                return
            flow_node.data.caught_escalation_code = code
            await manager.save_flow_node(flow_node, ["data"])

            start_data = process.get_element(element_id).event_start_data() or {}
            if start_data.get("isInterrupting"):
                await manager.interrupt_process_by_event_sub_process(process, flow_node)

            logger.info(f"Escalation '{code}' in process {process.id} caught by event sub-process {element_id}")
            await manager.process_prepared_flow_node(target, flow_node, process)
            return

        if not process.parent_process_flow_node_id:
            logger.info(f"Escalation '{code}' in process {process.id} is not handled")
            return

        parent_flow_node = await manager.get_flow_node(process.parent_process_flow_node_id)
        parent_process = await manager.get_process(process.parent_process_id) if parent_flow_node else None
        if not parent_flow_node or not parent_process:
            logger.warning(f"Parent of process {process.id} not found, escalation '{code}' dropped")
            return

        parent_target = await manager.get_target(parent_process)
        flow_node = await self.prepare_boundary_escalation_flow_node(
            parent_target, parent_flow_node, parent_process, code
        )
        if flow_node:
            await manager.process_prepared_flow_node(parent_target, flow_node, parent_process)
        else:
            logger.info(f"Escalation '{code}' from process {process.id} has no boundary handler")

    async def prepare_boundary_escalation_flow_node(
        self,
        target: Target,
        activity_flow_node: FlowNode,
        process: Process,
        code: Optional[str] = None
    ) -> Optional[FlowNode]:
        element_id = self._find_boundary(
            process, activity_flow_node, ElementType.EVENT_INTERMEDIATE_ESCALATION_BOUNDARY, "escalationCode", code
        )
        if not element_id:
            return None

        flow_node = await self.manager.prepare_flow(
            target,
            process,
            element_id,
            previous_flow_node_id=activity_flow_node.id,
            previous_flow_node_element_type=activity_flow_node.element_type.value
        )
        if flow_node:
            flow_node.data.caught_escalation_code = code
            await self.manager.save_flow_node(flow_node, ["data"])
        return flow_node

    # 补偿

    async def compensate(self, process: Process, activity_id: Optional[str] = None) -> List[str]:
        """
        补偿已完成的活动

        按完成顺序倒序（number 降序）为每个活动准备补偿处理节点，
        全部准备完成后统一派发。

        Returns:
            List[str]: 补偿处理节点ID
        """
        manager = self.manager
        flow_nodes = await manager.storage.flow_nodes.find(FlowNodeFilter(
            process_id=process.id,
            statuses={FlowNodeStatus.PROCESSED},
            element_types=COMPENSABLE_TYPES,
            element_id=activity_id,
            order_desc=True
        ))

        target = await manager.get_target(process)
        prepared: List[Tuple[Target, FlowNode, Process]] = []

        for flow_node in flow_nodes:
            handler = await self.prepare_boundary_compensation_flow_node(target, flow_node, process)
            if handler:
                prepared.append((target, handler, process))
                continue

            if flow_node.element_type == ElementType.SUB_PROCESS:
                result = await self.prepare_sub_process_compensation_flow_node(flow_node, process)
                if result:
                    prepared.append(result)

        for handler_target, handler, handler_process in prepared:
            await manager.process_prepared_flow_node(handler_target, handler, handler_process)

        logger.info(f"Compensation in process {process.id} started {len(prepared)} handlers")
        return [handler.id for _, handler, _ in prepared]

    async def prepare_boundary_compensation_flow_node(
        self,
        target: Target,
        activity_flow_node: FlowNode,
        process: Process
    ) -> Optional[FlowNode]:
        if activity_flow_node.element_data and activity_flow_node.element_data.is_multi_instance:
            return None

        for element_id in process.get_attached_element_ids(activity_flow_node):
            element = process.get_element(element_id)
            if element.type != ElementType.EVENT_INTERMEDIATE_COMPENSATION_BOUNDARY:
                continue
            if not element.next_element_ids:
                logger.warning(f"Compensation boundary '{element_id}' has no handler")
                return None

            flow_node = await self.manager.prepare_flow(
                target,
                process,
                element.next_element_ids[0],
                previous_flow_node_id=activity_flow_node.id,
                previous_flow_node_element_type=activity_flow_node.element_type.value,
                allow_ended_process=True
            )
            if flow_node:
                flow_node.data.compensated_flow_node_id = activity_flow_node.id
                await self.manager.save_flow_node(flow_node, ["data"])
            return flow_node

        return None

    async def prepare_sub_process_compensation_flow_node(
        self,
        sub_process_flow_node: FlowNode,
        process: Process
    ) -> Optional[Tuple[Target, FlowNode, Process]]:
        """子流程内部的补偿事件子流程"""
        manager = self.manager
        children = await manager.storage.processes.find_children(process.id, sub_process_flow_node.id)
        if not children:
            return None
        child = children[-1]

        for element_id in child.get_element_ids():
            element = child.get_element(element_id)
            if element.type != ElementType.EVENT_SUB_PROCESS:
                continue
            start_data = element.event_start_data() or {}
            if start_data.get("type") != ElementType.EVENT_START_COMPENSATION.value:
                continue

            child_target = await manager.get_target(child)
            if not child_target:
                return None
            flow_node = await manager.prepare_flow(child_target, child, element_id, allow_ended_process=True)
            if not flow_node:
                return None
            flow_node.data.compensated_flow_node_id = sub_process_flow_node.id
            await manager.save_flow_node(flow_node, ["data"])
            return child_target, flow_node, child

        return None

    # 边界事件取消活动

    async def cancel_activity_by_boundary_event(self, boundary_flow_node: FlowNode):
        """中断边界事件所附着的活动"""
        manager = self.manager
        activity_id = boundary_flow_node.previous_flow_node_id
        if not activity_id:
            logger.warning(f"Boundary flow node {boundary_flow_node.id} has no activity")
            return

        activity_flow_node = await manager.locker.get_and_lock_flow_node_by_id(activity_id)
        try:
            if not manager.is_flow_node_actual(activity_flow_node):
                logger.info(
                    f"Activity flow node {activity_id} is already {activity_flow_node.status.value}, "
                    f"not canceling"
                )
                return

            await manager.check_flow_is_actual(activity_flow_node)

            process = await manager.get_process(activity_flow_node.process_id)
            target = await manager.get_target(process)
            implementation = manager.get_implementation(target, activity_flow_node, process)
            await implementation.interrupt()

            if activity_flow_node.element_type in SUB_PROCESS_TYPES:
                children = await manager.storage.processes.find_children(
                    process.id, activity_flow_node.id, statuses=ACTIVE_PROCESS_STATUSES
                )
                for child in children:
                    try:
                        await manager.interrupt_process(child)
                    except Exception as e:
                        logger.error(f"Failed to interrupt sub-process {child.id}: {e}", exc_info=True)
        finally:
            await manager.locker.unlock_flow_node(activity_flow_node)
