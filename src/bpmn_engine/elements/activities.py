"""
活动元素：任务、用户任务、发送消息、子流程、调用活动、事件子流程
"""
import copy
import logging
from typing import Dict, Any, Optional, List

from ..models.flowchart import Element, ElementType, PENDING_BOUNDARY_TYPES, build_elements
from ..models.process import Process, FlowNode, Target, ProcessStatus, FlowNodeStatus
from ..storage.repository import FlowNodeFilter
from ..core.actions import ActionContext
from ..exceptions import ProcessError
from .base import BaseElement


logger = logging.getLogger(__name__)


USER_TASK_ENTITY_TYPE = "BpmnUserTask"
MESSAGE_ENTITY_TYPE = "Message"


class Activity(BaseElement):
    """
    活动基类

    开始前准备附着的等待型边界事件；完成、拒绝、中断时先拒绝这些边界事件。
    失败时优先交给匹配错误代码的错误边界事件，否则以错误结束流程。
    """

    async def before_process(self):
        await self.prepare_boundary()
        await self.refresh_flow_node()
        await self.refresh_target()

    async def prepare_boundary(self):
        """准备并派发附着在活动上的等待型边界事件"""
        boundary_flow_nodes = []
        for element_id in self.bpmn_process.get_attached_element_ids(self.flow_node):
            element = self.bpmn_process.get_element(element_id)
            if element.type not in PENDING_BOUNDARY_TYPES:
                continue
            boundary_flow_node = await self.manager.prepare_flow(
                self.target,
                self.bpmn_process,
                element_id,
                previous_flow_node_id=self.flow_node.id,
                previous_flow_node_element_type=self.flow_node.element_type.value
            )
            if boundary_flow_node:
                boundary_flow_nodes.append(boundary_flow_node)

        for boundary_flow_node in boundary_flow_nodes:
            await self.manager.process_prepared_flow_node(self.target, boundary_flow_node, self.bpmn_process)

    def is_processable(self) -> bool:
        return self.flow_node.status == FlowNodeStatus.CREATED

    def is_in_normal_flow(self) -> bool:
        return not (self.element and self.element.is_for_compensation)

    async def get_pending_boundary_flow_nodes(self) -> List[FlowNode]:
        return await self.storage.flow_nodes.find(FlowNodeFilter(
            process_id=self.bpmn_process.id,
            element_types=PENDING_BOUNDARY_TYPES,
            statuses={FlowNodeStatus.CREATED, FlowNodeStatus.PENDING},
            previous_flow_node_id=self.flow_node.id
        ))

    async def reject_pending_boundary_flow_nodes(self):
        for boundary_flow_node in await self.get_pending_boundary_flow_nodes():
            await self.manager.set_flow_node_status(boundary_flow_node, FlowNodeStatus.REJECTED)

    async def set_processed(self):
        await self.reject_pending_boundary_flow_nodes()
        await super().set_processed()

    async def set_rejected(self):
        await self.reject_pending_boundary_flow_nodes()
        await super().set_rejected()

    async def set_interrupted(self):
        await self.reject_pending_boundary_flow_nodes()
        await super().set_interrupted()

    async def set_failed(self):
        await self._fail_with(self.flow_node.data.error_code, self.flow_node.data.error_message)

    async def set_failed_with_exception(self, e: Exception):
        if isinstance(e, ProcessError):
            await self._fail_with(e.code, e.message)
        else:
            await self._fail_with(None, str(e))

    async def _fail_with(self, code: Optional[str], message: Optional[str]):
        await self.reject_pending_boundary_flow_nodes()

        boundary_flow_node = await self.manager.propagator.prepare_boundary_error_flow_node(
            self.target, self.flow_node, self.bpmn_process, code
        )
        if not boundary_flow_node:
            await self.set_failed_with_error(code, message)
            return

        boundary_flow_node.data.code = code
        boundary_flow_node.data.message = message
        await self.manager.save_flow_node(boundary_flow_node, ["data"])

        await super().set_failed()
        await self.manager.process_prepared_flow_node(self.target, boundary_flow_node, self.bpmn_process)

    async def set_failed_with_error(self, code: Optional[str] = None, message: Optional[str] = None):
        await self.set_status(FlowNodeStatus.FAILED)

        await self.refresh_process()
        if not self.bpmn_process.is_active():
            logger.info(
                f"Process {self.bpmn_process.id} is {self.bpmn_process.status.value}, "
                f"error '{code}' of flow node {self.flow_node.id} is not propagated"
            )
            return
        await self.manager.propagator.end_process_with_error(self.bpmn_process, code, message)

    def get_return_variable_list(self) -> List[str]:
        result = []
        for name in self.get_attribute("returnVariableList") or []:
            if not name:
                continue
            if name.startswith("$"):
                name = name[1:]
            result.append(name)
        return result

    async def store_variables(self, variables: Dict[str, Any], original: Dict[str, Any]) -> bool:
        """保存动作修改后的变量；isolateVariables 时只保留返回变量"""
        if self.get_attribute("isolateVariables"):
            isolated = copy.deepcopy(original)
            for name in self.get_return_variable_list():
                if name in variables:
                    isolated[name] = variables[name]
            variables = isolated

        if variables == original:
            return False

        await self.refresh_process()
        self.bpmn_process.variables = variables
        await self.save_process(["variables"])
        return True


class Task(Activity):
    """执行 actionList 中的动作"""

    async def process(self):
        original = self.get_variables()
        variables = copy.deepcopy(original)
        context = ActionContext(
            target=self.target,
            process=self.bpmn_process,
            element_id=self.element_id,
            variables=variables,
            created_entities_data=copy.deepcopy(self.get_created_entities_data()),
            target_resolver=self.manager.target_resolver
        )

        try:
            for action in self.get_attribute("actionList") or []:
                await self.manager.action_registry.execute_action(action, context)
        except Exception as e:
            logger.error(f"Task {self.flow_node.id} ({self.flow_node.element_id}) failed: {e}")
            await self.set_failed_with_exception(e)
            return

        await self.store_variables(context.variables, original)

        if context.created_entities_data_changed:
            await self.refresh_process()
            self.bpmn_process.created_entities_data = context.created_entities_data
            await self.save_process(["created_entities_data"])

        await self.process_next_element()


class TaskScript(Activity):
    """执行注册的脚本"""

    async def process(self):
        script_name = self.get_attribute("scriptName")
        if not script_name:
            await self.process_next_element()
            return

        original = self.get_variables()
        try:
            variables = await self.manager.action_registry.run_script(
                script_name, copy.deepcopy(original), self.target
            )
        except Exception as e:
            logger.error(f"Script '{script_name}' of flow node {self.flow_node.id} failed: {e}")
            await self.set_failed_with_exception(e)
            return

        await self.store_variables(variables, original)
        await self.process_next_element()


class TaskUser(Activity):
    """用户任务，等待外部完成"""

    async def process(self):
        await self.set_status(FlowNodeStatus.IN_PROCESS)

        target = await self.get_specific_target(self.get_attribute("target"))
        if not target:
            logger.info(f"Could not find target for user task flow node {self.flow_node.id}")
            await self.fail()
            return

        params = dict(self.element.params) if self.element else {}
        params["targetType"] = target.type
        params["targetId"] = target.id

        user_task_id = await self.manager.user_task_service.create_user_task(
            self.bpmn_process, self.flow_node, params
        )
        self.flow_node.data.user_task_id = user_task_id
        await self.save_flow_node(["data"])

        await self.refresh_process()
        created_entities_data = dict(self.get_created_entities_data())
        created_entities_data[self.element_id] = {
            "entityId": user_task_id,
            "entityType": USER_TASK_ENTITY_TYPE
        }
        self.bpmn_process.created_entities_data = created_entities_data
        await self.save_process(["created_entities_data"])

    async def complete(self):
        if not self.is_in_normal_flow():
            await self.set_processed()
            return
        await self.process_next_element()

    async def set_interrupted(self):
        await self.cancel_user_task()
        await super().set_interrupted()

    async def cleanup_interrupted(self):
        await self.cancel_user_task()

    async def cancel_user_task(self):
        user_task_id = self.flow_node.data.user_task_id
        if not user_task_id:
            return
        await self.manager.user_task_service.cancel_user_task(user_task_id)


class TaskSendMessage(Activity):
    """发送消息，由扫描器在下一轮发送"""

    async def process(self):
        await self.set_status(FlowNodeStatus.PENDING)

    async def proceed_pending(self):
        params = dict(self.element.params) if self.element else {}
        try:
            message_id = await self.manager.message_broker.send(self.bpmn_process, self.flow_node, params)
        except Exception as e:
            logger.error(f"Sending message of flow node {self.flow_node.id} failed: {e}")
            await self.set_failed_with_exception(e)
            return

        await self.refresh_process()
        created_entities_data = dict(self.get_created_entities_data())
        created_entities_data[self.element_id] = {
            "entityId": message_id,
            "entityType": MESSAGE_ENTITY_TYPE
        }
        self.bpmn_process.created_entities_data = created_entities_data
        await self.save_process(["created_entities_data"])

        await self.process_next_element()


class SubProcess(Activity):
    """嵌入式子流程，元素来自 dataList"""

    async def process(self):
        target = await self.get_specific_target(self.get_attribute("target"))
        if not target:
            logger.info(f"Could not get target for sub-process flow node {self.flow_node.id}")
            await self.fail()
            return

        child = await self.create_sub_process(target)
        if child is None:
            await self.fail()
            return

        self.flow_node.data.sub_process_id = child.id
        await self.set_status(FlowNodeStatus.IN_PROCESS, ["data"])

        try:
            await self.manager.start_created_process(child)
        except Exception as e:
            logger.error(f"Failed to start sub-process of flow node {self.flow_node.id}: {e}", exc_info=True)
            await self.fail()

    def get_sub_process_elements(self) -> Dict[str, Element]:
        elements, _, _ = build_elements(self.get_attribute("dataList") or [])
        return elements

    def get_sub_process_start_element_id(self) -> Optional[str]:
        return None

    async def create_sub_process(self, target: Target) -> Optional[Process]:
        await self.refresh_process()
        child = Process(
            flowchart_id=self.bpmn_process.flowchart_id,
            name=self.get_attribute("title") or self.element_id,
            status=ProcessStatus.CREATED,
            target_type=target.type,
            target_id=target.id,
            parent_process_id=self.bpmn_process.id,
            parent_process_flow_node_id=self.flow_node.id,
            root_process_id=self.bpmn_process.root_process_id,
            variables=self.get_variables(),
            created_entities_data=copy.deepcopy(self.get_created_entities_data()),
            flowchart_elements=self.get_sub_process_elements(),
            start_element_id=self.get_sub_process_start_element_id(),
            created_at=self.manager.now()
        )
        await self.manager.save_process(child)
        logger.info(f"Created sub-process {child.id} for flow node {self.flow_node.id}")
        return child

    async def get_sub_process(self) -> Optional[Process]:
        if not self.flow_node.data.sub_process_id:
            return None
        return await self.manager.get_process(self.flow_node.data.sub_process_id)

    async def copy_return_variables(self):
        """把子流程的返回变量复制到当前流程"""
        names = self.get_return_variable_list()
        if not names:
            return

        child = await self.get_sub_process()
        if not child:
            return

        await self.refresh_process()
        variables = dict(self.bpmn_process.variables or {})
        for name in names:
            if name in child.variables:
                variables[name] = copy.deepcopy(child.variables[name])
        self.bpmn_process.variables = variables
        await self.save_process(["variables"])

    async def complete(self):
        await self.copy_return_variables()

        if not self.is_in_normal_flow():
            await self.set_processed()
            return
        await self.process_next_element()


class CallActivity(SubProcess):
    """调用另一个流程图"""

    async def create_sub_process(self, target: Target) -> Optional[Process]:
        flowchart_id = self.get_attribute("flowchartId")
        flowchart = await self.storage.flowcharts.get(flowchart_id) if flowchart_id else None
        if not flowchart:
            logger.info(f"Flowchart '{flowchart_id}' of call activity {self.flow_node.id} not found")
            return None
        if not flowchart.is_active:
            logger.info(f"Flowchart '{flowchart_id}' of call activity {self.flow_node.id} is not active")
            return None
        if flowchart.target_type and flowchart.target_type != target.type:
            logger.info(
                f"Flowchart '{flowchart_id}' expects target type '{flowchart.target_type}', "
                f"got '{target.type}'"
            )
            return None

        await self.refresh_process()
        child = Process(
            flowchart_id=flowchart.id,
            name=flowchart.name,
            status=ProcessStatus.CREATED,
            target_type=target.type,
            target_id=target.id,
            parent_process_id=self.bpmn_process.id,
            parent_process_flow_node_id=self.flow_node.id,
            root_process_id=self.bpmn_process.root_process_id,
            variables=self.get_variables(),
            created_entities_data=copy.deepcopy(self.get_created_entities_data()),
            flowchart_elements=copy.deepcopy(flowchart.elements),
            start_element_id=self.get_attribute("startElementId"),
            created_at=self.manager.now()
        )
        await self.manager.save_process(child)
        logger.info(f"Created process {child.id} of flowchart '{flowchart.id}' for call activity {self.flow_node.id}")
        return child


class EventSubProcess(SubProcess):
    """
    事件子流程

    由待命节点触发，或由错误、升级、补偿匹配后直接准备。
    子流程从事件子流程自己的开始事件启动；完成后只尝试结束所属流程，不再推进。
    """

    def is_in_normal_flow(self) -> bool:
        return False

    def get_sub_process_start_element_id(self) -> Optional[str]:
        start_data = self.element.event_start_data() if self.element else None
        return (start_data or {}).get("id")

    async def create_sub_process(self, target: Target) -> Optional[Process]:
        if not self.get_sub_process_start_element_id():
            logger.info(f"Event sub-process flow node {self.flow_node.id} has no start event")
            return None

        child = await super().create_sub_process(target)
        if self.flow_node.data.caught_error_code or self.flow_node.data.caught_error_message:
            child.variables["__caughtErrorCode"] = self.flow_node.data.caught_error_code
            child.variables["__caughtErrorMessage"] = self.flow_node.data.caught_error_message
            await self.manager.save_process(child, ["variables"])
        return child

    async def complete(self):
        await self.copy_return_variables()
        await self.set_processed()
        await self.manager.try_to_end_process(self.bpmn_process)
