"""
事件元素
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..models.flowchart import ElementType
from ..models.process import Process, FlowNode, FlowNodeData, FlowNodeStatus
from .base import BaseElement


logger = logging.getLogger(__name__)


TIMER_SHIFT_UNITS = ("seconds", "minutes", "hours", "days", "months")


def add_months(value: datetime, months: int) -> datetime:
    """按月偏移，日期超出目标月天数时取月末"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def shift_datetime(value: datetime, shift: int, units: str) -> datetime:
    if units == "months":
        return add_months(value, shift)
    return value + timedelta(**{units: shift})


def parse_datetime(value) -> Optional[datetime]:
    """解析目标对象属性中的时间（ISO 格式字符串或 datetime），统一为 UTC 朴素时间"""
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, str) and value:
        try:
            result = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if result.tzinfo is not None:
        result = result.astimezone(timezone.utc).replace(tzinfo=None)
    return result


class Event(BaseElement):
    """事件基类"""

    def is_processable(self) -> bool:
        return self.flow_node.status == FlowNodeStatus.CREATED

    def check_conditions(self) -> bool:
        return self.manager.condition_evaluator.check(
            self.target,
            self.get_attribute("conditionsAll"),
            self.get_attribute("conditionsAny"),
            self.get_variables()
        )

    async def create_copy(
        self,
        status: FlowNodeStatus = FlowNodeStatus.PENDING,
        data: Optional[FlowNodeData] = None
    ) -> FlowNode:
        """创建当前节点的等待副本，用于非中断型边界事件重新等待"""
        flow_node = FlowNode(
            process_id=self.bpmn_process.id,
            flowchart_id=self.bpmn_process.flowchart_id,
            target_type=self.flow_node.target_type,
            target_id=self.flow_node.target_id,
            status=status,
            element_id=self.flow_node.element_id,
            element_type=self.flow_node.element_type,
            element_data=self.flow_node.element_data,
            previous_flow_node_id=self.flow_node.previous_flow_node_id,
            previous_flow_node_element_type=self.flow_node.previous_flow_node_element_type,
            divergent_flow_node_id=self.flow_node.divergent_flow_node_id,
            data=data if data is not None else self.flow_node.data.copy(),
            created_at=self.manager.now()
        )
        await self.manager.save_flow_node(flow_node)
        return flow_node

    async def cancel_activity(self):
        await self.manager.cancel_activity_by_boundary_event(self.flow_node)


# 开始与结束


class EventStart(Event):
    """开始事件"""

    async def process(self):
        await self.process_next_element()


class EventEnd(Event):
    """结束事件"""

    async def process(self):
        await self.set_processed()
        await self.end_process_flow()


class EventEndTerminate(Event):
    """终止结束事件：结束流程并中断子流程"""

    async def process(self):
        await self.set_processed()
        await self.refresh_process()
        if not self.bpmn_process.is_active():
            logger.info(f"Process {self.bpmn_process.id} is {self.bpmn_process.status.value}, not terminating")
            return
        await self.manager.end_process(self.bpmn_process, interrupt_sub_processes=True)


class EventEndError(Event):
    """错误结束事件"""

    async def process(self):
        await self.set_processed()
        await self.manager.propagator.end_process_with_error(
            self.bpmn_process,
            self.get_attribute("errorCode"),
            self.get_attribute("errorMessage")
        )


class EventEndEscalation(Event):
    """升级结束事件"""

    async def process(self):
        await self.set_processed()
        await self.manager.propagator.escalate(self.bpmn_process, self.get_attribute("escalationCode"))
        await self.end_process_flow()


class EventIntermediateEscalationThrow(Event):
    """升级抛出事件"""

    async def process(self):
        await self.manager.propagator.escalate(self.bpmn_process, self.get_attribute("escalationCode"))
        await self.process_next_element()


class EventEndSignal(Event):
    """信号结束事件"""

    async def process(self):
        await self.set_processed()
        signal = self.get_attribute("signal")
        if signal:
            await self.manager.scanner.broadcast_signal(signal)
        else:
            logger.warning(f"No signal for end event {self.flow_node.element_id}")
        await self.end_process_flow()


class EventIntermediateSignalThrow(Event):
    """信号抛出事件"""

    async def process(self):
        signal = self.get_attribute("signal")
        if signal:
            await self.manager.scanner.broadcast_signal(signal)
        else:
            logger.warning(f"No signal for throw event {self.flow_node.element_id}")
        await self.process_next_element()


# 补偿


class EventIntermediateCompensationThrow(Event):
    """
    补偿抛出事件

    触发补偿后进入 Pending，等待所有补偿处理节点结束后再推进。
    位于补偿事件子流程内部时补偿的是事件子流程所属的流程。
    """

    async def process(self):
        process = await self.get_compensation_process()
        ids = await self.manager.propagator.compensate(process, self.get_attribute("activityId"))

        self.flow_node.data.compensation_flow_node_ids = ids
        await self.set_status(FlowNodeStatus.PENDING, ["data"])

    async def get_compensation_process(self) -> Process:
        if not self.bpmn_process.parent_process_flow_node_id:
            return self.bpmn_process

        parent_flow_node = await self.manager.get_flow_node(self.bpmn_process.parent_process_flow_node_id)
        if not parent_flow_node or parent_flow_node.element_type != ElementType.EVENT_SUB_PROCESS:
            return self.bpmn_process

        start_data = parent_flow_node.element_data.event_start_data() or {}
        if start_data.get("type") != ElementType.EVENT_START_COMPENSATION.value:
            return self.bpmn_process

        parent_process = await self.manager.get_process(parent_flow_node.process_id)
        return parent_process or self.bpmn_process

    async def proceed_pending(self):
        for flow_node_id in self.flow_node.data.compensation_flow_node_ids or []:
            flow_node = await self.manager.get_flow_node(flow_node_id)
            if flow_node and not flow_node.is_terminal():
                logger.debug(f"Compensation flow node {flow_node_id} is not finished yet")
                return
        await self.advance()

    async def advance(self):
        await self.process_next_element()


class EventEndCompensation(EventIntermediateCompensationThrow):
    """补偿结束事件"""

    async def advance(self):
        await self.set_processed()
        await self.end_process_flow()


# 定时器


class TimerMixin:
    """根据 timerBase 与偏移计算触发时间"""

    async def get_proceed_at(self) -> Optional[datetime]:
        timer_base = self.get_attribute("timerBase")
        if not timer_base or timer_base == "moment":
            value = self.manager.now()
        elif timer_base.startswith("field:"):
            field_name = timer_base[len("field:"):]
            value = parse_datetime(self.target.get(field_name))
            if value is None:
                logger.warning(
                    f"Timer {self.flow_node.element_id}: attribute '{field_name}' of target is not a date"
                )
                return None
        else:
            logger.warning(f"Timer {self.flow_node.element_id}: unsupported timer base '{timer_base}'")
            return None

        shift = self.get_attribute("timerShift")
        if not shift:
            return value

        units = self.get_attribute("timerShiftUnits")
        if units not in TIMER_SHIFT_UNITS:
            logger.warning(
                f"Bad shift in {self.flow_node.element_type.value} {self.flow_node.element_id} "
                f"in flowchart {self.flow_node.flowchart_id}"
            )
            return None

        try:
            shift = int(shift)
        except (TypeError, ValueError):
            logger.warning(f"Timer {self.flow_node.element_id}: bad shift '{shift}'")
            return None

        if self.get_attribute("timerShiftOperator") == "minus":
            shift = -shift
        return shift_datetime(value, shift, units)


class EventIntermediateTimerCatch(TimerMixin, Event):
    """定时器捕获事件"""

    pending_status = FlowNodeStatus.PENDING

    async def process(self):
        proceed_at = await self.get_proceed_at()
        if proceed_at is None:
            await self.set_failed()
            return

        self.flow_node.proceed_at = proceed_at
        await self.set_status(self.pending_status, ["proceed_at"])

    async def proceed_pending(self):
        await self.set_status(FlowNodeStatus.IN_PROCESS)
        await self.reject_concurrent_pending_flows()
        await self.process_next_element()


class EventIntermediateTimerBoundary(EventIntermediateTimerCatch):
    """定时器边界事件，非中断型只触发一次"""

    async def proceed_pending(self):
        await self.set_status(FlowNodeStatus.IN_PROCESS)
        await self.process_next_element()
        if self.element.cancel_activity:
            await self.cancel_activity()


# 条件


class EventIntermediateConditionalCatch(Event):
    """条件捕获事件"""

    async def process(self):
        if self.check_conditions():
            await self.reject_concurrent_pending_flows()
            await self.process_next_element()
            return
        await self.set_status(FlowNodeStatus.PENDING)

    async def proceed_pending(self):
        if self.check_conditions():
            await self.reject_concurrent_pending_flows()
            await self.process_next_element()


class EventIntermediateConditionalBoundary(Event):
    """
    条件边界事件

    非中断型在触发后留下一个反向副本，条件重新变为假时再创建正向副本，
    以便条件再次成立时再次触发。
    """

    async def process(self):
        if self.check_conditions():
            await self.trigger()
            return
        await self.set_status(FlowNodeStatus.PENDING)

    async def proceed_pending(self):
        result = self.check_conditions()

        if self.flow_node.data.is_opposite:
            if not result:
                await self.set_processed()
                await self.create_opposite_node(is_negative=True)
            return

        if result:
            await self.trigger()

    async def trigger(self):
        cancel = self.element.cancel_activity
        if not cancel:
            await self.create_opposite_node()
        await self.process_next_element()
        if cancel:
            await self.cancel_activity()

    async def create_opposite_node(self, is_negative: bool = False) -> FlowNode:
        return await self.create_copy(data=FlowNodeData(is_opposite=not is_negative))


# 消息


class EventIntermediateMessageCatch(Event):
    """消息捕获事件"""

    async def process(self):
        await self.set_status(FlowNodeStatus.PENDING)

    async def is_message_received(self) -> bool:
        target = await self.get_specific_target(self.get_attribute("relatedTo"))
        if not target:
            await self.update_checked_at()
            return False

        since = self.flow_node.data.checked_at or self.flow_node.created_at
        params = dict(self.element.params) if self.element else {}
        messages = await self.manager.message_broker.find_messages(target, since, params)
        if not messages:
            await self.update_checked_at()
            return False
        return True

    async def update_checked_at(self):
        self.flow_node.data.checked_at = self.manager.now()
        await self.save_flow_node(["data"])

    async def proceed_pending(self):
        if not await self.is_message_received():
            return
        await self.set_status(FlowNodeStatus.IN_PROCESS)
        await self.proceed_pending_final()

    async def proceed_pending_final(self):
        await self.reject_concurrent_pending_flows()
        await self.process_next_element()


class EventIntermediateMessageBoundary(EventIntermediateMessageCatch):
    """消息边界事件"""

    async def proceed_pending_final(self):
        cancel = self.element.cancel_activity
        if not cancel:
            data = self.flow_node.data.copy()
            data.checked_at = self.manager.now()
            await self.create_copy(data=data)
        await self.process_next_element()
        if cancel:
            await self.cancel_activity()


# 信号


class EventSignal(Event):
    """信号事件基类"""

    def get_signal(self) -> Optional[str]:
        return self.get_attribute("signal")

    async def subscribe(self, flow_node_id: str):
        await self.manager.scanner.subscribe(self.get_signal(), flow_node_id)

    async def process(self):
        signal = self.get_signal()
        if not signal:
            logger.warning(f"No signal for {self.flow_node.element_type.value} {self.flow_node.element_id}")
            await self.fail()
            return

        await self.set_status(FlowNodeStatus.PENDING)
        await self.subscribe(self.flow_node.id)


class EventIntermediateSignalCatch(EventSignal):
    """信号捕获事件"""

    async def proceed_pending(self):
        await self.set_status(FlowNodeStatus.IN_PROCESS)
        await self.reject_concurrent_pending_flows()
        await self.process_next_element()


class EventIntermediateSignalBoundary(EventSignal):
    """信号边界事件"""

    async def proceed_pending(self):
        await self.set_status(FlowNodeStatus.IN_PROCESS)

        cancel = self.element.cancel_activity
        if not cancel:
            copy = await self.create_copy()
            await self.subscribe(copy.id)

        await self.process_next_element()
        if cancel:
            await self.cancel_activity()


# 错误与升级边界


class EventIntermediateErrorBoundary(Event):
    """错误边界事件，活动失败时已准备好"""

    async def process(self):
        await self.process_next_element()


class EventIntermediateEscalationBoundary(Event):
    """升级边界事件"""

    async def process(self):
        await self.process_next_element()
        if self.element.cancel_activity:
            await self.cancel_activity()


# 链接


class EventIntermediateLinkThrow(Event):
    """链接抛出事件：跳转到同名的链接捕获事件"""

    async def process(self):
        link_name = self.get_attribute("linkName")
        for element_id in self.bpmn_process.get_element_ids():
            element = self.bpmn_process.get_element(element_id)
            if element.type == ElementType.EVENT_INTERMEDIATE_LINK_CATCH and element.get("linkName") == link_name:
                await self.process_next_element(element_id)
                return

        logger.warning(f"No link catch event '{link_name}' in process {self.bpmn_process.id}")
        await self.fail()


class EventIntermediateLinkCatch(Event):
    """链接捕获事件"""

    async def process(self):
        await self.process_next_element()


# 事件子流程待命节点


class EventSubProcessStarter(Event):
    """
    事件子流程待命节点基类

    节点的 element_data 是事件子流程的开始事件。触发后启动事件子流程：
    中断型先中断所属流程（保留待命节点自身），非中断型启动后重新待命。
    """

    rearm = True

    async def process(self):
        await self.set_status(FlowNodeStatus.STANDBY)

    async def proceed_pending(self):
        await self.start_event_sub_process()

    async def start_event_sub_process(self):
        data = self.flow_node.data
        event_sub_process_id = data.sub_process_element_id
        await self.refresh_process()

        if data.sub_process_is_interrupting:
            await self.manager.interrupt_process_by_event_sub_process(self.bpmn_process, self.flow_node)

        flow_node = await self.manager.prepare_flow(
            self.target,
            self.bpmn_process,
            event_sub_process_id,
            previous_flow_node_id=self.flow_node.id,
            previous_flow_node_element_type=self.flow_node.element_type.value,
            allow_ended_process=True
        )
        await self.set_processed()

        if not data.sub_process_is_interrupting and self.rearm:
            await self.rearm_standby()

        if flow_node:
            logger.info(f"Event sub-process '{event_sub_process_id}' started in process {self.bpmn_process.id}")
            await self.manager.process_prepared_flow_node(self.target, flow_node, self.bpmn_process)

    async def rearm_standby(self):
        await self.manager.prepare_standby_flow(self.target, self.bpmn_process, self.flow_node.data.sub_process_element_id)


class EventStartTimerEventSubProcess(TimerMixin, EventSubProcessStarter):
    """定时器事件子流程，只触发一次"""

    rearm = False

    async def process(self):
        proceed_at = await self.get_proceed_at()
        if proceed_at is None:
            await self.set_failed()
            return

        self.flow_node.proceed_at = proceed_at
        await self.set_status(FlowNodeStatus.STANDBY, ["proceed_at"])


class EventStartConditionalEventSubProcess(EventSubProcessStarter):
    """条件事件子流程，由扫描器检查条件"""

    async def proceed_pending(self):
        result = self.check_conditions()

        if self.flow_node.data.is_opposite:
            if not result:
                await self.set_processed()
                await self.manager.prepare_standby_flow(
                    self.target, self.bpmn_process, self.flow_node.data.sub_process_element_id
                )
            return

        if result:
            await self.start_event_sub_process()

    async def rearm_standby(self):
        # 条件重新变为假之后才再次待命
        data = self.flow_node.data.copy()
        data.is_opposite = True
        await self.create_copy(status=FlowNodeStatus.STANDBY, data=data)


class EventStartSignalEventSubProcess(EventSignal, EventSubProcessStarter):
    """信号事件子流程"""

    async def process(self):
        signal = self.get_signal()
        if not signal:
            logger.warning(f"No signal for event sub-process '{self.flow_node.data.sub_process_element_id}'")
            await self.fail()
            return

        await self.set_status(FlowNodeStatus.STANDBY)
        await self.subscribe(self.flow_node.id)

    async def proceed_pending(self):
        await self.start_event_sub_process()
