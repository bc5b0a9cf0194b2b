"""
流程生命周期管理
"""
import copy
import logging
from collections import deque
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional, List, Callable, Deque, Iterable

from ..config import EngineConfig
from ..models.flowchart import (
    Flowchart, Element, ElementType, START_ELEMENT_TYPES, ON_DEMAND_START_TYPES
)
from ..models.process import (
    Process, FlowNode, FlowNodeData, Target, ProcessStatus, FlowNodeStatus,
    FLOW_NODE_TERMINAL_STATUSES, FLOW_NODE_WAITING_STATUSES
)
from ..storage.repository import Storage, FlowNodeFilter
from ..elements.registry import ElementRegistry
from ..integrations.event_bus import EventBus, record_update_topic
from ..integrations.collaborators import (
    TargetResolver, InMemoryTargetResolver,
    UserTaskService, InMemoryUserTaskService,
    MessageBroker, InMemoryMessageBroker
)
from ..exceptions import (
    StructuralError, ElementNotFoundError, TargetMismatchError,
    ProcessAlreadyStartedError, ProcessNotActiveError, FlowNotActualError,
    FlowNodeLockedError
)
from .state_machine import transition, FlowNodeLocker
from .conditions import ConditionEvaluator
from .actions import ActionRegistry
from .propagator import Propagator
from .scanner import PendingFlowScanner


logger = logging.getLogger(__name__)


@dataclass
class _DispatchItem:
    target: Target
    flow_node_id: str
    process_id: str


# 当前调用链的派发队列，由最外层调用方清空
_dispatch_queue: ContextVar[Optional[Deque[_DispatchItem]]] = ContextVar(
    "bpmn_dispatch_queue", default=None
)


class ProcessManager:
    """
    流程生命周期管理器

    负责创建、启动、结束、中断流程，并将流程节点派发给对应的元素实现，
    直到流程进入静止状态（所有令牌处于终态或等待外部触发）。
    """

    PROCESS_ENTITY_TYPE = "BpmnProcess"
    FLOW_NODE_ENTITY_TYPE = "BpmnFlowNode"

    def __init__(
        self,
        storage: Optional[Storage] = None,
        config: Optional[EngineConfig] = None,
        registry: Optional[ElementRegistry] = None,
        event_bus: Optional[EventBus] = None,
        target_resolver: Optional[TargetResolver] = None,
        user_task_service: Optional[UserTaskService] = None,
        message_broker: Optional[MessageBroker] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        action_registry: Optional[ActionRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage or Storage.in_memory()
        self.config = config or EngineConfig()
        self.registry = registry or ElementRegistry.default()
        self.event_bus = event_bus or EventBus()
        self.target_resolver = target_resolver or InMemoryTargetResolver()
        self.user_task_service = user_task_service or InMemoryUserTaskService()
        self.message_broker = message_broker or InMemoryMessageBroker()
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self.action_registry = action_registry or ActionRegistry()
        self.clock = clock or datetime.utcnow

        self.locker = FlowNodeLocker(self.storage.flow_nodes)
        self.propagator = Propagator(self)
        self.scanner = PendingFlowScanner(self)

    def now(self) -> datetime:
        return self.clock()

    # 存储辅助

    async def get_process(self, process_id: str) -> Optional[Process]:
        return await self.storage.processes.get(process_id)

    async def get_flow_node(self, flow_node_id: str) -> Optional[FlowNode]:
        return await self.storage.flow_nodes.get(flow_node_id)

    async def get_target(self, process: Process) -> Optional[Target]:
        """加载流程绑定的业务对象"""
        if not process.target_type or not process.target_id:
            return None
        return await self.target_resolver.get_entity(process.target_type, process.target_id)

    async def refresh_process(self, process: Process) -> Process:
        stored = await self.storage.processes.get(process.id)
        if stored:
            process.update_from(stored)
        return process

    async def save_process(self, process: Process, fields: Optional[Iterable[str]] = None):
        """保存流程并发布记录更新事件"""
        await self.storage.processes.save(process, fields)
        await self.publish_process_update(process)

    async def publish_process_update(self, process: Process):
        await self.event_bus.publish(
            record_update_topic(self.PROCESS_ENTITY_TYPE, process.id),
            {"entityType": self.PROCESS_ENTITY_TYPE, "id": process.id, "status": process.status.value}
        )

    async def save_flow_node(self, flow_node: FlowNode, fields: Optional[Iterable[str]] = None):
        """保存流程节点并发布所属流程的记录更新事件"""
        await self.storage.flow_nodes.save(flow_node, fields)
        await self.event_bus.publish(
            record_update_topic(self.PROCESS_ENTITY_TYPE, flow_node.process_id),
            {
                "entityType": self.FLOW_NODE_ENTITY_TYPE,
                "id": flow_node.id,
                "processId": flow_node.process_id,
                "status": flow_node.status.value
            }
        )

    async def set_flow_node_status(
        self,
        flow_node: FlowNode,
        status: FlowNodeStatus,
        extra_fields: Iterable[str] = ()
    ) -> bool:
        """转换节点状态并只保存状态相关字段"""
        stored = await self.storage.flow_nodes.get(flow_node.id)
        if stored and stored.is_terminal() and flow_node.status not in FLOW_NODE_TERMINAL_STATUSES:
            # 其他调用已将节点置为终态
            logger.info(
                f"Flow node {flow_node.id} is already {stored.status.value}, "
                f"not setting '{status.value}'"
            )
            flow_node.status = stored.status
            return False

        changed = transition(flow_node, status)
        fields = ["status"]
        if status in (FlowNodeStatus.PROCESSED, FlowNodeStatus.FAILED):
            flow_node.processed_at = self.now()
            fields.append("processed_at")
        fields.extend(extra_fields)
        await self.save_flow_node(flow_node, fields)
        return changed

    def get_implementation(self, target: Target, flow_node: FlowNode, process: Process):
        """创建节点对应的元素实现"""
        return self.registry.create(self, target, flow_node, process)

    # 启动

    async def start_process(
        self,
        target: Target,
        flowchart: Flowchart,
        start_element_id: Optional[str] = None,
        created_process: Optional[Process] = None,
        signal_params: Optional[Dict[str, Any]] = None
    ) -> Process:
        """创建并启动流程"""
        if start_element_id:
            element = flowchart.get_element(start_element_id)
            if not element:
                raise ElementNotFoundError(start_element_id, flowchart.id)
            if element.type not in START_ELEMENT_TYPES:
                raise StructuralError(
                    f"Can't start process from element '{start_element_id}' of type '{element.type.value}'"
                )

        process = created_process or Process(
            flowchart_id=flowchart.id,
            name=flowchart.name,
            created_at=self.now()
        )
        process.flowchart_id = process.flowchart_id or flowchart.id
        process.target_type = target.type
        process.target_id = target.id
        if start_element_id:
            process.start_element_id = start_element_id

        if not process.is_sub_process():
            active = await self.storage.processes.find_active_by_target(
                process.flowchart_id, target.type, target.id
            )
            if any(p.id != process.id for p in active):
                raise ProcessAlreadyStartedError(process.flowchart_id, target.type, target.id)

        if not process.flowchart_elements:
            process.flowchart_elements = copy.deepcopy(flowchart.elements)

        if signal_params is not None:
            process.variables["__signalParams"] = signal_params

        await self.save_process(process)
        await self.start_created_process(process, flowchart)
        return await self.refresh_process(process)

    async def start_created_process(self, process: Process, flowchart: Optional[Flowchart] = None):
        """启动处于 Created 状态的流程"""
        if process.status != ProcessStatus.CREATED:
            raise StructuralError(
                f"Can't start process {process.id}, status is '{process.status.value}'"
            )

        if not process.flowchart_elements and flowchart:
            process.flowchart_elements = copy.deepcopy(flowchart.elements)

        target = await self.get_target(process)
        if not target:
            raise StructuralError(
                f"Can't start process {process.id}, target {process.target_type} "
                f"'{process.target_id}' not found"
            )

        process.status = ProcessStatus.STARTED
        await self.save_process(process)
        logger.info(f"Started process {process.id} (flowchart '{process.flowchart_id}')")

        async with self.dispatch_scope():
            if process.start_element_id:
                flow_node = await self.prepare_flow(target, process, process.start_element_id)
                await self.prepare_event_sub_processes(target, process)
                if flow_node:
                    await self.process_prepared_flow_node(target, flow_node, process)
                return

            entry_element_ids = self.get_entry_element_ids(process)
            if not entry_element_ids:
                logger.info(f"Process {process.id} has no start elements, ending")
                await self.end_process(process)
                return

            flow_nodes = []
            for element_id in entry_element_ids:
                flow_node = await self.prepare_flow(target, process, element_id)
                if flow_node:
                    flow_nodes.append(flow_node)

            await self.prepare_event_sub_processes(target, process)

            for flow_node in flow_nodes:
                await self.process_prepared_flow_node(target, flow_node, process)

        await self.refresh_process(process)

    def get_entry_element_ids(self, process: Process) -> List[str]:
        """没有入线的可启动元素"""
        result = []
        for element_id in process.get_element_ids():
            element = process.get_element(element_id)
            element_type = element.type
            if element_type == ElementType.FLOW:
                continue
            if element_type.is_event_start and element_type != ElementType.EVENT_START:
                continue
            if element_type == ElementType.EVENT_INTERMEDIATE_LINK_CATCH:
                continue
            if element_type.is_event_sub_process_starter or element_type.is_boundary:
                continue
            if element_type == ElementType.EVENT_SUB_PROCESS:
                continue
            if element.previous_element_ids or element.is_for_compensation:
                continue
            result.append(element_id)
        return result

    async def prepare_flow(
        self,
        target: Target,
        process: Process,
        element_id: str,
        previous_flow_node_id: Optional[str] = None,
        previous_flow_node_element_type: Optional[str] = None,
        divergent_flow_node_id: Optional[str] = None,
        allow_ended_process: bool = False
    ) -> Optional[FlowNode]:
        """为元素创建 Created 状态的流程节点"""
        if not allow_ended_process and process.status != ProcessStatus.STARTED:
            logger.info(
                f"Process {process.id} is not started (status '{process.status.value}'), "
                f"element '{element_id}' is not prepared"
            )
            return None

        element = process.get_element(element_id)
        if element is None:
            raise ElementNotFoundError(element_id, process.flowchart_id)
        if element.type is None:
            raise StructuralError(f"Element '{element_id}' has no type")

        if target.type != process.target_type or target.id != process.target_id:
            raise TargetMismatchError("Not matching targets")

        flow_node = FlowNode(
            process_id=process.id,
            flowchart_id=process.flowchart_id,
            target_type=target.type,
            target_id=target.id,
            status=FlowNodeStatus.CREATED,
            element_id=element_id,
            element_type=element.type,
            element_data=copy.deepcopy(element),
            previous_flow_node_id=previous_flow_node_id,
            previous_flow_node_element_type=previous_flow_node_element_type,
            divergent_flow_node_id=divergent_flow_node_id,
            created_at=self.now()
        )
        await self.save_flow_node(flow_node)
        logger.debug(f"Prepared flow node {flow_node.id} for element '{element_id}' ({element.type.value})")
        return flow_node

    async def prepare_event_sub_processes(self, target: Target, process: Process):
        """为流程中的事件子流程创建待命节点"""
        for element_id in process.get_element_ids():
            element = process.get_element(element_id)
            if element.type == ElementType.EVENT_SUB_PROCESS:
                await self.prepare_standby_flow(target, process, element_id)

    async def prepare_standby_flow(
        self,
        target: Target,
        process: Process,
        event_sub_process_element_id: str
    ) -> Optional[FlowNode]:
        """创建事件子流程的待命节点并派发"""
        if process.status != ProcessStatus.STARTED:
            logger.info(f"Process {process.id} is not started, standby flow is not prepared")
            return None

        element = process.get_element(event_sub_process_element_id)
        if element is None:
            raise ElementNotFoundError(event_sub_process_element_id, process.flowchart_id)

        start_data = element.event_start_data()
        if not start_data or not start_data.get("type") or not start_data.get("id"):
            raise StructuralError(
                f"Event sub-process '{event_sub_process_element_id}' has no start event"
            )

        start_type = ElementType(start_data["type"])
        if start_type in ON_DEMAND_START_TYPES:
            return None

        try:
            standby_type = ElementType(f"{start_type.value}EventSubProcess")
        except ValueError:
            raise StructuralError(
                f"Event sub-process '{event_sub_process_element_id}' can't start with '{start_type.value}'"
            )

        flow_node = FlowNode(
            process_id=process.id,
            flowchart_id=process.flowchart_id,
            target_type=target.type,
            target_id=target.id,
            status=FlowNodeStatus.CREATED,
            element_id=event_sub_process_element_id,
            element_type=standby_type,
            element_data=Element.from_dict(start_data),
            data=FlowNodeData(
                sub_process_element_id=event_sub_process_element_id,
                sub_process_target=element.get("target"),
                sub_process_is_interrupting=bool(start_data.get("isInterrupting")),
                sub_process_title=element.get("title"),
                sub_process_start_data=dict(start_data)
            ),
            created_at=self.now()
        )
        await self.save_flow_node(flow_node)
        await self.process_prepared_flow_node(target, flow_node, process)
        return flow_node

    # 派发

    @asynccontextmanager
    async def dispatch_scope(self):
        """
        派发作用域

        作用域内请求的派发进入队列，在最外层作用域退出时按先进先出顺序处理。
        嵌套的作用域不会重复清空队列。
        """
        if _dispatch_queue.get() is not None:
            yield
            return

        queue: Deque[_DispatchItem] = deque()
        token = _dispatch_queue.set(queue)
        try:
            yield
            await self._drain(queue)
        finally:
            _dispatch_queue.reset(token)

    async def process_prepared_flow_node(self, target: Target, flow_node: FlowNode, process: Process):
        """派发已准备的节点"""
        queue = _dispatch_queue.get()
        if queue is not None:
            queue.append(_DispatchItem(target, flow_node.id, process.id))
            logger.debug(f"Queued flow node {flow_node.id} ({flow_node.element_type.value})")
            return

        async with self.dispatch_scope():
            await self._process_flow_node(target, flow_node, process)

    async def process_flow_node_now(self, target: Target, flow_node: FlowNode, process: Process):
        """立即处理节点，不经过队列（调用方需要同步观察结果）"""
        if _dispatch_queue.get() is None:
            await self.process_prepared_flow_node(target, flow_node, process)
            return
        await self._process_flow_node(target, flow_node, process)

    async def _drain(self, queue: Deque[_DispatchItem]):
        first_error: Optional[Exception] = None
        while queue:
            item = queue.popleft()
            flow_node = await self.get_flow_node(item.flow_node_id)
            if flow_node is None or flow_node.is_deleted:
                logger.info(f"Queued flow node {item.flow_node_id} no longer exists, skipping")
                continue
            if flow_node.is_terminal():
                logger.info(
                    f"Queued flow node {flow_node.id} is already {flow_node.status.value}, skipping"
                )
                continue
            process = await self.get_process(item.process_id)
            if process is None:
                logger.info(f"Process {item.process_id} of queued flow node {flow_node.id} not found, skipping")
                continue
            try:
                await self._process_flow_node(item.target, flow_node, process)
            except Exception as e:
                logger.error(f"Failed to process flow node {flow_node.id}: {e}", exc_info=True)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    async def _process_flow_node(self, target: Target, flow_node: FlowNode, process: Process):
        implementation = self.get_implementation(target, flow_node, process)
        logger.debug(f"Processing flow node {flow_node.id} ({flow_node.element_type.value})")

        await implementation.before_process()

        if not implementation.is_processable():
            logger.info(
                f"Flow node {flow_node.id} ({flow_node.element_type.value}) is not processable, "
                f"status '{flow_node.status.value}'"
            )
            return

        await implementation.process()

    # 结束

    def is_flow_node_actual(self, flow_node: FlowNode) -> bool:
        return flow_node.status not in FLOW_NODE_TERMINAL_STATUSES

    async def end_process_flow(self, flow_node: FlowNode, process: Process):
        """结束一条令牌路径，并尝试结束流程"""
        stored = await self.get_flow_node(flow_node.id)
        if stored and self.is_flow_node_actual(stored):
            await self.set_flow_node_status(stored, FlowNodeStatus.REJECTED)
            flow_node.status = stored.status

        await self.try_to_end_process(process)

    async def count_active_flows(self, process: Process) -> int:
        return await self.storage.flow_nodes.count(FlowNodeFilter(
            process_id=process.id,
            exclude_statuses=FLOW_NODE_TERMINAL_STATUSES | {FlowNodeStatus.STANDBY},
            exclude_element_types={ElementType.EVENT_SUB_PROCESS}
        ))

    async def count_active_event_sub_processes(self, process: Process) -> int:
        return await self.storage.flow_nodes.count(FlowNodeFilter(
            process_id=process.id,
            statuses={FlowNodeStatus.IN_PROCESS},
            element_types={ElementType.EVENT_SUB_PROCESS}
        ))

    async def try_to_end_process(self, process: Process):
        """没有活动令牌时结束流程"""
        await self.refresh_process(process)

        if not process.is_active():
            return

        if await self.count_active_flows(process):
            return

        if await self.count_active_event_sub_processes(process):
            # 等待事件子流程结束
            await self.reject_active_flows(process)
            return

        await self.end_process(process)

    async def end_process(self, process: Process, interrupt_sub_processes: bool = False):
        """结束流程；子流程结束后完成父流程中的活动节点"""
        await self.reject_active_flows(process)
        await self.refresh_process(process)

        if not process.is_active():
            raise ProcessNotActiveError(process.id, process.status.value, "can't be ended")

        if interrupt_sub_processes:
            await self.interrupt_sub_processes(process)

        process.status = ProcessStatus.ENDED
        process.ended_at = self.now()
        await self.save_process(process, ["status", "ended_at"])
        logger.info(f"Ended process {process.id}")

        if process.parent_process_flow_node_id:
            parent_flow_node = await self.get_flow_node(process.parent_process_flow_node_id)
            if parent_flow_node:
                await self.complete_flow(parent_flow_node)

    # 中断

    async def reject_active_flows(self, process: Process, exclude_flow_node_id: Optional[str] = None):
        """拒绝流程中所有活动令牌：InProcess 置为 Interrupted，其余置为 Rejected"""
        flow_nodes = await self.storage.flow_nodes.find(FlowNodeFilter(
            process_id=process.id,
            exclude_statuses=FLOW_NODE_TERMINAL_STATUSES,
            exclude_element_types={ElementType.EVENT_SUB_PROCESS}
        ))

        interrupted = []
        for flow_node in flow_nodes:
            if flow_node.id == exclude_flow_node_id:
                continue
            if flow_node.status == FlowNodeStatus.IN_PROCESS:
                await self.set_flow_node_status(flow_node, FlowNodeStatus.INTERRUPTED)
                interrupted.append(flow_node)
            else:
                await self.set_flow_node_status(flow_node, FlowNodeStatus.REJECTED)

        if not interrupted:
            return

        target = await self.get_target(process)
        for flow_node in interrupted:
            implementation = self.get_implementation(target, flow_node, process)
            await implementation.cleanup_interrupted()

    async def interrupt_process(self, process: Process):
        """中断流程及其子流程"""
        await self.refresh_process(process)
        if not process.is_active():
            raise ProcessNotActiveError(process.id, process.status.value, "can't be interrupted")

        await self.reject_active_flows(process)

        process.status = ProcessStatus.INTERRUPTED
        await self.save_process(process, ["status"])
        logger.info(f"Interrupted process {process.id}")

        await self.interrupt_sub_processes(process)

    async def interrupt_process_by_event_sub_process(self, process: Process, interrupting_flow_node: FlowNode):
        """由中断型事件子流程中断流程，保留触发节点"""
        await self.refresh_process(process)
        if not process.is_active():
            raise ProcessNotActiveError(process.id, process.status.value, "can't be interrupted")

        await self.reject_active_flows(process, interrupting_flow_node.id)

        process.status = ProcessStatus.INTERRUPTED
        await self.save_process(process, ["status"])
        logger.info(
            f"Interrupted process {process.id} by event sub-process flow node {interrupting_flow_node.id}"
        )

        await self.interrupt_sub_processes(process)

    async def interrupt_sub_processes(self, process: Process):
        """递归中断运行中的子流程"""
        children = await self.storage.processes.find_children(
            process.id,
            statuses={ProcessStatus.STARTED, ProcessStatus.PAUSED}
        )
        for child in children:
            try:
                await self.interrupt_process(child)
            except Exception as e:
                logger.error(f"Failed to interrupt sub-process {child.id}: {e}", exc_info=True)

    async def stop_process(self, process: Process):
        """停止流程"""
        await self.refresh_process(process)
        await self.reject_active_flows(process)
        await self.interrupt_sub_processes(process)

        process.ended_at = self.now()
        process.status = ProcessStatus.STOPPED
        await self.save_process(process, ["status", "ended_at"])
        logger.info(f"Stopped process {process.id}")

    async def pause_process(self, process: Process):
        await self.refresh_process(process)
        if process.status != ProcessStatus.STARTED:
            raise ProcessNotActiveError(process.id, process.status.value, "only started processes can be paused")
        process.status = ProcessStatus.PAUSED
        await self.save_process(process, ["status"])
        logger.info(f"Paused process {process.id}")

    async def resume_process(self, process: Process):
        await self.refresh_process(process)
        if process.status != ProcessStatus.PAUSED:
            raise StructuralError(f"Process {process.id} is not paused")
        process.status = ProcessStatus.STARTED
        await self.save_process(process, ["status"])
        logger.info(f"Resumed process {process.id}")

    async def remove_process(self, process: Process):
        """删除流程，级联到子流程"""
        children = await self.storage.processes.find_children(process.id)
        for child in children:
            await self.remove_process(child)

        await self.reject_active_flows(process)

        flow_nodes = await self.storage.flow_nodes.find(FlowNodeFilter(process_id=process.id))
        for flow_node in flow_nodes:
            await self.storage.flow_nodes.delete(flow_node.id)

        await self.storage.processes.delete(process.id)
        await self.storage.signal_listeners.delete_stale()
        logger.info(f"Removed process {process.id}")

    # 节点操作

    async def set_flow_node_failed(self, flow_node: FlowNode):
        if flow_node.is_terminal():
            return
        await self.set_flow_node_status(flow_node, FlowNodeStatus.FAILED)
        logger.info(f"Flow node {flow_node.id} set failed")

    async def check_flow_is_actual(self, flow_node: FlowNode):
        """检查节点所在流程仍可推进，否则抛出 FlowNotActualError"""
        process = await self.get_process(flow_node.process_id)
        if not process:
            await self.set_flow_node_failed(flow_node)
            raise FlowNotActualError(flow_node.id, "process not found")

        target = await self.get_target(process)
        if not target:
            await self.set_flow_node_failed(flow_node)
            if process.is_active():
                await self.interrupt_process(process)
            raise FlowNotActualError(flow_node.id, "target not found")

        if process.status == ProcessStatus.PAUSED:
            raise FlowNotActualError(flow_node.id, f"process {process.id} is paused")

        if self.is_compensation_flow_node(flow_node):
            return

        if process.status != ProcessStatus.STARTED:
            await self.set_flow_node_failed(flow_node)
            raise FlowNotActualError(flow_node.id, f"process {process.id} is not started")

    def is_compensation_flow_node(self, flow_node: FlowNode) -> bool:
        if flow_node.element_data and flow_node.element_data.is_for_compensation:
            return True
        return bool(flow_node.data.compensated_flow_node_id)

    async def proceed_pending_flow(self, flow_node: FlowNode) -> bool:
        """
        恢复等待中的节点

        Returns:
            bool: 是否执行了恢复；节点已被锁定或不再等待时返回 False
        """
        async with self.dispatch_scope():
            try:
                flow_node = await self.locker.get_and_lock_flow_node_by_id(flow_node.id)
            except FlowNodeLockedError:
                logger.info(f"Flow node {flow_node.id} is locked, skipping")
                return False

            try:
                if flow_node.status not in FLOW_NODE_WAITING_STATUSES:
                    logger.info(
                        f"Flow node {flow_node.id} is not pending (status '{flow_node.status.value}'), skipping"
                    )
                    return False

                await self.check_flow_is_actual(flow_node)

                process = await self.get_process(flow_node.process_id)
                target = await self.get_target(process)
                implementation = self.get_implementation(target, flow_node, process)
                await implementation.proceed_pending()
            finally:
                await self.locker.unlock_flow_node(flow_node)
        return True

    async def complete_flow(self, flow_node: FlowNode):
        """完成处于 InProcess 状态的节点（用户任务、子流程等）"""
        async with self.dispatch_scope():
            flow_node = await self.locker.get_and_lock_flow_node_by_id(flow_node.id)
            try:
                if flow_node.status != FlowNodeStatus.IN_PROCESS:
                    raise StructuralError(
                        f"Can't complete flow node {flow_node.id}, status is '{flow_node.status.value}'"
                    )

                if flow_node.element_type != ElementType.EVENT_SUB_PROCESS:
                    await self.check_flow_is_actual(flow_node)

                process = await self.get_process(flow_node.process_id)
                target = await self.get_target(process)
                implementation = self.get_implementation(target, flow_node, process)
                await implementation.complete()
            finally:
                await self.locker.unlock_flow_node(flow_node)

            if flow_node.element_type == ElementType.EVENT_SUB_PROCESS:
                await self._end_parent_flow_by_event_sub_process(flow_node)

    async def _end_parent_flow_by_event_sub_process(self, flow_node: FlowNode):
        start_data = (flow_node.element_data.event_start_data() if flow_node.element_data else None) or {}
        is_interrupting = bool(start_data.get("isInterrupting"))
        if not is_interrupting and not flow_node.data.is_error_handler:
            return

        process = await self.get_process(flow_node.process_id)
        if not process or not process.parent_process_flow_node_id:
            return

        parent_flow_node = await self.locker.get_and_lock_flow_node_by_id(process.parent_process_flow_node_id)
        try:
            if parent_flow_node.is_terminal():
                logger.info(
                    f"Parent flow node {parent_flow_node.id} is already {parent_flow_node.status.value}"
                )
                return
            await self.set_flow_node_status(parent_flow_node, FlowNodeStatus.INTERRUPTED)
        finally:
            await self.locker.unlock_flow_node(parent_flow_node)

        parent_process = await self.get_process(parent_flow_node.process_id)
        if parent_process:
            await self.end_process_flow(parent_flow_node, parent_process)

    async def fail_flow(self, flow_node: FlowNode):
        """使节点失败"""
        async with self.dispatch_scope():
            flow_node = await self.locker.get_and_lock_flow_node_by_id(flow_node.id)
            try:
                if not self.is_flow_node_actual(flow_node):
                    raise FlowNotActualError(flow_node.id, f"can't fail, status is '{flow_node.status.value}'")

                await self.check_flow_is_actual(flow_node)

                process = await self.get_process(flow_node.process_id)
                target = await self.get_target(process)
                implementation = self.get_implementation(target, flow_node, process)
                await implementation.fail()
            finally:
                await self.locker.unlock_flow_node(flow_node)

    async def cancel_activity_by_boundary_event(self, boundary_flow_node: FlowNode):
        await self.propagator.cancel_activity_by_boundary_event(boundary_flow_node)
