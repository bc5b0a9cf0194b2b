"""
网关元素
"""
import logging
from collections import deque
from typing import Optional, List, Set

from ..models.process import FlowNode, ProcessStatus, FlowNodeStatus
from ..storage.repository import FlowNodeFilter
from .base import BaseElement, INHERIT


logger = logging.getLogger(__name__)


class Gateway(BaseElement):
    """网关基类：多于一条出线时为分叉，否则为汇合"""

    async def process(self):
        if self.is_divergent():
            await self.process_divergent()
        else:
            await self.process_convergent()

    def is_divergent(self) -> bool:
        return len(self.get_next_element_ids()) > 1

    async def process_divergent(self):
        raise NotImplementedError

    async def process_convergent(self):
        raise NotImplementedError

    def check_elements_belong_single_flow(
        self,
        divergent_element_id: str,
        fork_element_id: str,
        element_id: str
    ) -> bool:
        """从分叉后的第一个元素出发、不经过分叉网关，能否到达指定元素"""
        if fork_element_id == element_id:
            return True

        visited: Set[str] = {divergent_element_id}
        queue = deque([fork_element_id])
        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)

            element = self.bpmn_process.get_element(current_id)
            if element is None:
                continue
            for next_id in element.next_element_ids:
                if next_id == element_id:
                    return True
                if next_id not in visited:
                    queue.append(next_id)
        return False

    async def fork(self, next_element_ids: List[str]):
        """为每条分支准备节点并派发，分支节点以当前节点作为 divergent"""
        await self.set_status(FlowNodeStatus.IN_PROCESS)

        next_flow_nodes = []
        for next_element_id in next_element_ids:
            next_flow_node = await self.prepare_next_flow_node(next_element_id, self.flow_node.id)
            if next_flow_node:
                next_flow_nodes.append(next_flow_node)

        await self.set_processed()

        for next_flow_node in next_flow_nodes:
            await self.refresh_process()
            if self.bpmn_process.status != ProcessStatus.STARTED:
                break
            await self.manager.process_prepared_flow_node(self.target, next_flow_node, self.bpmn_process)

        await self.manager.try_to_end_process(self.bpmn_process)

    async def get_divergent_flow_node(self) -> Optional[FlowNode]:
        if not self.flow_node.divergent_flow_node_id:
            return None
        return await self.manager.get_flow_node(self.flow_node.divergent_flow_node_id)

    async def count_concurrent_flow_nodes(self) -> int:
        """已到达的令牌数，只计入不晚于当前节点创建的，保证只有最后一个令牌通过"""
        return await self.storage.flow_nodes.count(FlowNodeFilter(
            process_id=self.bpmn_process.id,
            element_id=self.flow_node.element_id,
            divergent_flow_node_id=self.flow_node.divergent_flow_node_id,
            max_number=self.flow_node.number
        ))

    def is_balancing_divergent(self, divergent_flow_node: Optional[FlowNode]) -> bool:
        """每条分支都汇入当前网关"""
        if divergent_flow_node is None or divergent_flow_node.element_data is None:
            return True
        for fork_id in divergent_flow_node.element_data.next_element_ids:
            if not self.check_elements_belong_single_flow(
                divergent_flow_node.element_id, fork_id, self.flow_node.element_id
            ):
                return False
        return True

    async def converge(self, converging_flow_count: int, divergent_flow_node: Optional[FlowNode]):
        """
        等待汇合

        到达的令牌数小于汇合数时拒绝当前令牌；最后到达的令牌继续，
        分叉与汇合成对时沿用分叉节点的 divergent，否则沿用自身的。
        """
        concurrent_count = await self.count_concurrent_flow_nodes()
        if concurrent_count < converging_flow_count:
            logger.debug(
                f"Gateway {self.flow_node.element_id} waits for {converging_flow_count - concurrent_count} flows"
            )
            await self.set_rejected()
            return

        if self.is_balancing_divergent(divergent_flow_node):
            next_divergent_id = divergent_flow_node.divergent_flow_node_id if divergent_flow_node else None
            await self.process_next_element(None, next_divergent_id)
            return

        await self.process_next_element(None, INHERIT)


class GatewayExclusive(Gateway):
    """排他网关"""

    async def process_divergent(self):
        for flow in self.element.flow_list:
            if self.manager.condition_evaluator.check(
                self.target,
                flow.get("conditionsAll"),
                flow.get("conditionsAny"),
                self.get_variables()
            ):
                next_element_id = flow.get("elementId")
                if next_element_id:
                    await self.process_next_element(next_element_id)
                    return

        default_id = self.element.default_next_element_id
        if default_id:
            await self.process_next_element(default_id)
            return

        logger.info(f"Exclusive gateway {self.flow_node.element_id} has no matching flow, ending flow")
        await self.end_process_flow()

    async def process_convergent(self):
        await self.process_next_element()


class GatewayInclusive(Gateway):
    """包容网关"""

    async def process_divergent(self):
        next_element_ids = []
        for flow in self.element.flow_list:
            if self.manager.condition_evaluator.check(
                self.target,
                flow.get("conditionsAll"),
                flow.get("conditionsAny"),
                self.get_variables()
            ):
                next_element_id = flow.get("elementId")
                if next_element_id and next_element_id not in next_element_ids:
                    next_element_ids.append(next_element_id)

        if not next_element_ids and self.element.default_next_element_id:
            next_element_ids.append(self.element.default_next_element_id)

        if not next_element_ids:
            logger.info(f"Inclusive gateway {self.flow_node.element_id} has no matching flow, ending flow")
            await self.end_process_flow()
            return

        await self.fork(next_element_ids)

    async def process_convergent(self):
        divergent_flow_node = await self.get_divergent_flow_node()

        converging_flow_count = 1
        if divergent_flow_node:
            fork_flow_nodes = await self.storage.flow_nodes.find(FlowNodeFilter(
                process_id=self.bpmn_process.id,
                previous_flow_node_id=divergent_flow_node.id
            ))
            converging_flow_count = 0
            for previous_element_id in self.element.previous_element_ids:
                for fork_flow_node in fork_flow_nodes:
                    if self.check_elements_belong_single_flow(
                        divergent_flow_node.element_id,
                        fork_flow_node.element_id,
                        previous_element_id
                    ):
                        converging_flow_count += 1
                        break

        await self.converge(converging_flow_count, divergent_flow_node)


class GatewayParallel(Gateway):
    """并行网关"""

    async def process_divergent(self):
        next_element_ids = self.get_next_element_ids()
        if not next_element_ids:
            await self.end_process_flow()
            return
        await self.fork(next_element_ids)

    async def process_convergent(self):
        divergent_flow_node = await self.get_divergent_flow_node()
        converging_flow_count = len(self.element.previous_element_ids)
        await self.converge(converging_flow_count, divergent_flow_node)


class GatewayEventBased(Gateway):
    """基于事件的网关：依次处理后续事件，第一个完成的事件胜出"""

    async def process_divergent(self):
        await self.set_status(FlowNodeStatus.IN_PROCESS)

        for next_element_id in self.get_next_element_ids():
            next_flow_node = await self.process_next_element(
                next_element_id, INHERIT, dont_set_processed=True, dispatch_now=True
            )
            if next_flow_node is None:
                continue
            stored = await self.manager.get_flow_node(next_flow_node.id)
            if stored and stored.status == FlowNodeStatus.PROCESSED:
                break

        await self.set_processed()
        await self.manager.try_to_end_process(self.bpmn_process)

    async def process_convergent(self):
        await self.process_next_element()
