"""
元素实现基类
"""
import copy
import logging
from typing import Dict, Any, Optional, List, Iterable, TYPE_CHECKING

from ..models.flowchart import Element, ElementType
from ..models.process import Process, FlowNode, Target, FlowNodeStatus
from ..storage.repository import FlowNodeFilter
from ..exceptions import StructuralError

if TYPE_CHECKING:
    from ..core.manager import ProcessManager


logger = logging.getLogger(__name__)


class _Inherit:
    def __repr__(self):
        return "INHERIT"


# 沿用当前节点的 divergent_flow_node_id
INHERIT: Any = _Inherit()


class BaseElement:
    """
    元素实现基类

    每次派发都会为 (目标对象, 流程节点, 流程) 创建一个新实例。
    子类实现 ``process``，按需覆盖 ``proceed_pending`` / ``complete`` 等入口。
    """

    def __init__(self, manager: "ProcessManager", target: Target, flow_node: FlowNode, process: Process):
        self.manager = manager
        self.target = target
        self.flow_node = flow_node
        self.bpmn_process = process

    @property
    def storage(self):
        return self.manager.storage

    @property
    def element(self) -> Optional[Element]:
        return self.flow_node.element_data

    @property
    def element_id(self) -> str:
        element_id = self.flow_node.element_id
        if not element_id:
            raise StructuralError(
                f"No id for element {self.flow_node.element_type.value} "
                f"in flowchart {self.flow_node.flowchart_id}"
            )
        return element_id

    def get_attribute(self, name: str, default: Any = None) -> Any:
        return self.flow_node.get_element_attribute(name, default)

    # 刷新与保存

    async def refresh_flow_node(self):
        stored = await self.manager.get_flow_node(self.flow_node.id)
        if stored:
            self.flow_node.update_from(stored)

    async def refresh_process(self):
        await self.manager.refresh_process(self.bpmn_process)

    async def refresh_target(self):
        if not self.target:
            return
        stored = await self.manager.target_resolver.get_entity(self.target.type, self.target.id)
        if stored:
            self.target.attributes = dict(stored.attributes)

    async def refresh(self):
        await self.refresh_flow_node()
        await self.refresh_process()
        await self.refresh_target()

    async def save_flow_node(self, fields: Optional[Iterable[str]] = None):
        await self.manager.save_flow_node(self.flow_node, fields)

    async def save_process(self, fields: Optional[Iterable[str]] = None):
        await self.manager.save_process(self.bpmn_process, fields)

    async def set_status(self, status: FlowNodeStatus, extra_fields: Iterable[str] = ()) -> bool:
        return await self.manager.set_flow_node_status(self.flow_node, status, extra_fields)

    # 入口

    def is_processable(self) -> bool:
        return True

    async def before_process(self):
        pass

    async def process(self):
        raise NotImplementedError

    async def proceed_pending(self):
        raise StructuralError(
            f"Can't proceed element {self.flow_node.element_type.value} '{self.flow_node.element_id}' "
            f"in flowchart {self.flow_node.flowchart_id}"
        )

    async def complete(self):
        raise StructuralError(f"Can't complete {self.flow_node.element_type.value}")

    async def fail(self):
        await self.set_failed()

    async def interrupt(self):
        await self.set_interrupted()

    async def cleanup_interrupted(self):
        pass

    # 状态

    async def set_processed(self):
        await self.set_status(FlowNodeStatus.PROCESSED)

    async def set_interrupted(self):
        await self.set_status(FlowNodeStatus.INTERRUPTED)
        await self.end_process_flow()

    async def set_failed(self):
        await self.set_status(FlowNodeStatus.FAILED)
        await self.end_process_flow()

    async def set_rejected(self):
        await self.set_status(FlowNodeStatus.REJECTED)
        await self.end_process_flow()

    async def end_process_flow(self):
        await self.manager.end_process_flow(self.flow_node, self.bpmn_process)

    # 推进

    def is_in_normal_flow(self) -> bool:
        return True

    def get_next_element_ids(self) -> List[str]:
        if not self.element:
            return []
        return list(self.element.next_element_ids)

    def get_next_element_id(self) -> Optional[str]:
        next_ids = self.get_next_element_ids()
        return next_ids[0] if next_ids else None

    async def prepare_next_flow_node(
        self,
        next_element_id: Optional[str] = None,
        divergent_flow_node_id: Any = INHERIT
    ) -> Optional[FlowNode]:
        """
        为下一个元素准备节点

        未指定下一个元素时取第一条出线；不在正常流程中（补偿处理器）时不推进，
        没有出线时结束当前令牌路径。
        """
        if not next_element_id:
            if not self.is_in_normal_flow():
                return None
            next_element_id = self.get_next_element_id()
            if not next_element_id:
                await self.end_process_flow()
                return None

        if divergent_flow_node_id is INHERIT:
            divergent_flow_node_id = self.flow_node.divergent_flow_node_id

        await self.refresh_process()
        return await self.manager.prepare_flow(
            self.target,
            self.bpmn_process,
            next_element_id,
            previous_flow_node_id=self.flow_node.id,
            previous_flow_node_element_type=self.flow_node.element_type.value,
            divergent_flow_node_id=divergent_flow_node_id
        )

    async def process_next_element(
        self,
        next_element_id: Optional[str] = None,
        divergent_flow_node_id: Any = INHERIT,
        dont_set_processed: bool = False,
        dispatch_now: bool = False
    ) -> Optional[FlowNode]:
        next_flow_node = await self.prepare_next_flow_node(next_element_id, divergent_flow_node_id)

        if not dont_set_processed:
            await self.set_processed()

        if next_flow_node:
            if dispatch_now:
                await self.manager.process_flow_node_now(self.target, next_flow_node, self.bpmn_process)
            else:
                await self.manager.process_prepared_flow_node(self.target, next_flow_node, self.bpmn_process)

        return next_flow_node

    async def reject_concurrent_pending_flows(self):
        """基于事件的网关之后，第一个触发的事件拒绝其余等待中的事件"""
        if self.flow_node.previous_flow_node_element_type != ElementType.GATEWAY_EVENT_BASED.value:
            return
        if not self.flow_node.previous_flow_node_id:
            return

        flow_nodes = await self.storage.flow_nodes.find(FlowNodeFilter(
            process_id=self.bpmn_process.id,
            previous_flow_node_id=self.flow_node.previous_flow_node_id,
            statuses={FlowNodeStatus.CREATED, FlowNodeStatus.PENDING}
        ))
        for flow_node in flow_nodes:
            if flow_node.id == self.flow_node.id:
                continue
            await self.manager.set_flow_node_status(flow_node, FlowNodeStatus.REJECTED)
            logger.debug(f"Rejected concurrent flow node {flow_node.id} ({flow_node.element_id})")

    # 变量与目标

    def get_variables(self) -> Dict[str, Any]:
        return copy.deepcopy(self.bpmn_process.variables or {})

    def get_created_entities_data(self) -> Dict[str, Any]:
        return self.bpmn_process.created_entities_data or {}

    async def get_created_entity(self, alias: str) -> Optional[Target]:
        if alias.startswith("created:"):
            alias = alias[len("created:"):]

        item = self.get_created_entities_data().get(alias)
        if not item or not item.get("entityType") or not item.get("entityId"):
            return None

        return await self.manager.target_resolver.get_entity(item["entityType"], item["entityId"])

    async def get_specific_target(self, target: Optional[str] = None) -> Optional[Target]:
        """
        解析元素指定的目标对象

        ``None`` 或 ``targetEntity`` 表示流程自身的目标对象，
        ``created:<alias>`` 表示流程中此前创建并登记的对象。
        """
        if not target or target == "targetEntity":
            return self.target

        if target.startswith("created:"):
            return await self.get_created_entity(target)

        logger.info(f"Unsupported target '{target}' in element '{self.flow_node.element_id}'")
        return None
