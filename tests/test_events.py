"""
事件元素测试
"""
import pytest
from datetime import datetime, timedelta, timezone

from bpmn_engine.models.process import ProcessStatus, FlowNodeStatus
from bpmn_engine.elements.events import add_months, shift_datetime, parse_datetime
from bpmn_engine.integrations.collaborators import Message


def signal_catch_flowchart(builder, signal="go"):
    builder.element("start", "eventStart")
    builder.element("wait", "eventIntermediateSignalCatch", signal=signal)
    builder.element("end", "eventEnd")
    builder.chain("start", "wait", "end")
    return builder.build()


def user_task_with_boundary(builder, boundary_type, cancel_activity, **boundary_params):
    builder.element("start", "eventStart")
    builder.element("review", "taskUser", name="Review")
    builder.element("end", "eventEnd")
    builder.element("boundary", boundary_type, attachedToId="review",
                    cancelActivity=cancel_activity, **boundary_params)
    builder.element("notify", "task", actionList=[
        {"type": "setVariable", "name": "notified", "value": True}
    ])
    builder.element("end_boundary", "eventEnd")
    builder.chain("start", "review", "end")
    builder.chain("boundary", "notify", "end_boundary")
    return builder.build()


class TestSignals:
    """信号测试类"""

    @pytest.mark.asyncio
    async def test_broadcast_delivers_immediately(self, engine, builder, manager):
        """测试广播信号立即恢复等待节点"""
        process = await engine.start(signal_catch_flowchart(builder))
        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.PENDING

        assert await manager.scanner.broadcast_signal("go") == 1

        assert (await engine.process(process.id)).status == ProcessStatus.ENDED
        assert await manager.scanner.broadcast_signal("go") == 0

    @pytest.mark.asyncio
    async def test_other_signal_is_ignored(self, engine, builder, manager):
        """测试不同名称的信号不会触发"""
        process = await engine.start(signal_catch_flowchart(builder))

        assert await manager.scanner.broadcast_signal("stop") == 0
        assert (await engine.process(process.id)).status == ProcessStatus.STARTED

    @pytest.mark.asyncio
    async def test_triggered_signal_is_delivered_by_scan(self, engine, builder, manager):
        """测试触发的信号在下一次扫描时投递"""
        process = await engine.start(signal_catch_flowchart(builder))

        assert await manager.scanner.trigger_signal("go") == 1
        assert (await engine.process(process.id)).status == ProcessStatus.STARTED

        await engine.scan()

        assert (await engine.process(process.id)).status == ProcessStatus.ENDED
        assert await manager.storage.signal_listeners.find(signal_name="go") == []

    @pytest.mark.asyncio
    async def test_signal_end_event_resumes_other_process(self, engine, builder, builder_factory):
        """测试信号结束事件恢复另一个流程中的等待节点"""
        waiting = await engine.start(signal_catch_flowchart(builder, "ready"))

        sender = builder_factory()
        sender.element("start", "eventStart")
        sender.element("done", "eventEndSignal", signal="ready")
        sender.chain("start", "done")
        sent = await engine.start(sender.build("flowchart-2"))

        assert sent.status == ProcessStatus.ENDED
        assert (await engine.process(waiting.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_signal_throw_continues_flow(self, engine, builder, builder_factory):
        """测试信号抛出事件广播后继续推进"""
        waiting = await engine.start(signal_catch_flowchart(builder, "ready"))

        sender = builder_factory()
        sender.element("start", "eventStart")
        sender.element("throw", "eventIntermediateSignalThrow", signal="ready")
        sender.element("after", "task", actionList=[{"type": "setVariable", "name": "sent", "value": True}])
        sender.element("end", "eventEnd")
        sender.chain("start", "throw", "after", "end")
        sent = await engine.start(sender.build("flowchart-2"))

        assert sent.variables["sent"] is True
        assert (await engine.process(waiting.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_catch_without_signal_fails(self, engine, builder):
        """测试没有信号名称的捕获事件失败"""
        builder.element("start", "eventStart")
        builder.element("wait", "eventIntermediateSignalCatch")
        builder.element("end", "eventEnd")
        builder.chain("start", "wait", "end")

        process = await engine.start(builder.build())

        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.FAILED
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_stale_listeners_are_cleaned_up(self, engine, builder, manager):
        """测试流程停止后扫描清理失效的监听"""
        process = await engine.start(signal_catch_flowchart(builder))
        await manager.stop_process(process)

        await engine.scan()

        assert await manager.storage.signal_listeners.find(signal_name="go") == []
        assert await manager.scanner.broadcast_signal("go") == 0


class TestTimers:
    """定时器测试类"""

    def test_add_months_clamps_to_month_end(self):
        """测试按月偏移取月末"""
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
        assert add_months(datetime(2024, 11, 15), 3) == datetime(2025, 2, 15)
        assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)

    def test_shift_datetime(self):
        """测试时间偏移单位"""
        base = datetime(2024, 1, 15, 12, 0, 0)
        assert shift_datetime(base, 90, "minutes") == datetime(2024, 1, 15, 13, 30)
        assert shift_datetime(base, -2, "days") == datetime(2024, 1, 13, 12, 0)
        assert shift_datetime(base, 1, "months") == datetime(2024, 2, 15, 12, 0)

    def test_parse_datetime(self):
        """测试解析目标对象中的时间"""
        assert parse_datetime("2024-01-20T10:00:00") == datetime(2024, 1, 20, 10, 0)
        aware = datetime(2024, 1, 20, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        assert parse_datetime(aware) == datetime(2024, 1, 20, 8, 0)
        assert parse_datetime("not a date") is None
        assert parse_datetime(None) is None

    @pytest.mark.asyncio
    async def test_timer_relative_to_target_field(self, engine, builder, target):
        """测试以目标对象字段为基准并向前偏移"""
        target.attributes["dueDate"] = "2024-01-20T12:00:00"
        builder.element("start", "eventStart")
        builder.element("remind", "eventIntermediateTimerCatch", timerBase="field:dueDate",
                        timerShift=1, timerShiftUnits="days", timerShiftOperator="minus")
        builder.element("end", "eventEnd")
        builder.chain("start", "remind", "end")

        process = await engine.start(builder.build())

        assert (await engine.node(process.id, "remind")).proceed_at == datetime(2024, 1, 19, 12, 0)

    @pytest.mark.asyncio
    async def test_bad_shift_units_fail_timer(self, engine, builder):
        """测试无效的偏移单位使定时器失败"""
        builder.element("start", "eventStart")
        builder.element("timer", "eventIntermediateTimerCatch", timerShift=3, timerShiftUnits="weeks")
        builder.element("end", "eventEnd")
        builder.chain("start", "timer", "end")

        process = await engine.start(builder.build())

        assert (await engine.node(process.id, "timer")).status == FlowNodeStatus.FAILED
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_missing_field_fails_timer(self, engine, builder):
        """测试基准字段不是时间时定时器失败"""
        builder.element("start", "eventStart")
        builder.element("timer", "eventIntermediateTimerCatch", timerBase="field:missing")
        builder.element("end", "eventEnd")
        builder.chain("start", "timer", "end")

        process = await engine.start(builder.build())

        assert (await engine.node(process.id, "timer")).status == FlowNodeStatus.FAILED


class TestTimerBoundary:
    """定时器边界事件测试类"""

    @pytest.mark.asyncio
    async def test_interrupting_timer_cancels_activity(self, engine, builder, manager):
        """测试中断型定时器边界事件取消用户任务"""
        process = await engine.start(user_task_with_boundary(
            builder, "eventIntermediateTimerBoundary", True, timerShift=2, timerShiftUnits="hours"
        ))
        assert (await engine.node(process.id, "boundary")).status == FlowNodeStatus.PENDING

        engine.clock.advance(hours=2)
        assert await engine.scan() == 1

        review = await engine.node(process.id, "review")
        assert review.status == FlowNodeStatus.INTERRUPTED
        assert manager.user_task_service.tasks[review.data.user_task_id].is_canceled is True

        stored = await engine.process(process.id)
        assert stored.variables["notified"] is True
        assert stored.status == ProcessStatus.ENDED
        assert "end" not in await engine.statuses(process.id)

    @pytest.mark.asyncio
    async def test_non_interrupting_timer_keeps_activity(self, engine, builder, manager):
        """测试非中断型定时器边界事件只触发一次，活动继续"""
        process = await engine.start(user_task_with_boundary(
            builder, "eventIntermediateTimerBoundary", False, timerShift=2, timerShiftUnits="hours"
        ))

        engine.clock.advance(hours=2)
        assert await engine.scan() == 1

        review = await engine.node(process.id, "review")
        assert review.status == FlowNodeStatus.IN_PROCESS
        stored = await engine.process(process.id)
        assert stored.variables["notified"] is True
        assert stored.status == ProcessStatus.STARTED

        engine.clock.advance(hours=4)
        assert await engine.scan() == 0

        await manager.complete_flow(review)
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_completing_activity_rejects_boundary(self, engine, builder, manager):
        """测试活动完成后拒绝等待中的边界事件"""
        process = await engine.start(user_task_with_boundary(
            builder, "eventIntermediateTimerBoundary", True, timerShift=2, timerShiftUnits="hours"
        ))

        await manager.complete_flow(await engine.node(process.id, "review"))

        assert (await engine.node(process.id, "boundary")).status == FlowNodeStatus.REJECTED
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

        engine.clock.advance(hours=3)
        assert await engine.scan() == 0


class TestMessageEvents:
    """消息事件测试类"""

    def build(self, builder):
        builder.element("start", "eventStart")
        builder.element("wait", "eventIntermediateMessageCatch", messageName="paid")
        builder.element("end", "eventEnd")
        builder.chain("start", "wait", "end")
        return builder.build()

    @pytest.mark.asyncio
    async def test_message_catch_waits_for_message(self, engine, builder, manager):
        """测试消息到达后恢复"""
        process = await engine.start(self.build(builder))

        assert await engine.scan() == 1
        wait = await engine.node(process.id, "wait")
        assert wait.status == FlowNodeStatus.PENDING
        assert wait.data.checked_at == engine.clock()

        engine.clock.advance(minutes=5)
        manager.message_broker.receive(Message(
            name="paid", target_type="Lead", target_id="lead-1", created_at=engine.clock()
        ))
        await engine.scan()

        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.PROCESSED
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_message_for_other_target_is_ignored(self, engine, builder, manager):
        """测试其他目标对象或其他名称的消息不触发"""
        process = await engine.start(self.build(builder))

        engine.clock.advance(minutes=5)
        manager.message_broker.receive(Message(
            name="paid", target_type="Lead", target_id="lead-2", created_at=engine.clock()
        ))
        manager.message_broker.receive(Message(
            name="refunded", target_type="Lead", target_id="lead-1", created_at=engine.clock()
        ))
        await engine.scan()

        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.PENDING

    @pytest.mark.asyncio
    async def test_old_message_is_ignored(self, engine, builder, manager):
        """测试节点创建前的消息不触发"""
        manager.message_broker.receive(Message(
            name="paid", target_type="Lead", target_id="lead-1",
            created_at=engine.clock() - timedelta(hours=1)
        ))
        process = await engine.start(self.build(builder))

        await engine.scan()

        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.PENDING

    @pytest.mark.asyncio
    async def test_non_interrupting_message_boundary_rearms(self, engine, builder, manager):
        """测试非中断型消息边界事件触发后重新等待"""
        process = await engine.start(user_task_with_boundary(
            builder, "eventIntermediateMessageBoundary", False, messageName="ping"
        ))

        engine.clock.advance(minutes=1)
        manager.message_broker.receive(Message(
            name="ping", target_type="Lead", target_id="lead-1", created_at=engine.clock()
        ))
        await engine.scan()

        boundaries = await engine.nodes(process.id, "boundary")
        assert [n.status for n in boundaries] == [FlowNodeStatus.PROCESSED, FlowNodeStatus.PENDING]
        assert (await engine.node(process.id, "review")).status == FlowNodeStatus.IN_PROCESS
        assert (await engine.process(process.id)).variables["notified"] is True


class TestConditionalEvents:
    """条件事件测试类"""

    def build(self, builder):
        builder.element("start", "eventStart")
        builder.element("wait", "eventIntermediateConditionalCatch", conditionsAll=[
            {"attribute": "status", "comparison": "equals", "value": "Won"}
        ])
        builder.element("end", "eventEnd")
        builder.chain("start", "wait", "end")
        return builder.build()

    @pytest.mark.asyncio
    async def test_conditional_catch_waits_for_condition(self, engine, builder, target):
        """测试条件满足后恢复"""
        process = await engine.start(self.build(builder))
        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.PENDING

        await engine.scan()
        assert (await engine.node(process.id, "wait")).status == FlowNodeStatus.PENDING

        target.attributes["status"] = "Won"
        assert await engine.scan() == 1
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_conditional_catch_passes_when_already_true(self, engine, builder, target):
        """测试到达时条件已满足则直接通过"""
        target.attributes["status"] = "Won"
        process = await engine.start(self.build(builder))

        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_interrupting_conditional_boundary(self, engine, builder, target, manager):
        """测试中断型条件边界事件"""
        process = await engine.start(user_task_with_boundary(
            builder, "eventIntermediateConditionalBoundary", True,
            conditionsAll=[{"attribute": "status", "comparison": "equals", "value": "Lost"}]
        ))
        assert (await engine.node(process.id, "boundary")).status == FlowNodeStatus.PENDING

        target.attributes["status"] = "Lost"
        await engine.scan()

        review = await engine.node(process.id, "review")
        assert review.status == FlowNodeStatus.INTERRUPTED
        assert manager.user_task_service.tasks[review.data.user_task_id].is_canceled is True
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_pending_check_backs_off(self, engine, builder):
        """测试条件节点在宽限期之后按间隔退避检查"""
        process = await engine.start(self.build(builder))

        engine.clock.advance(hours=1)
        assert await engine.scan() == 1

        engine.clock.advance(hours=6)
        assert await engine.scan() == 1
        wait = await engine.node(process.id, "wait")
        assert wait.is_deferred is True
        assert wait.deferred_at == engine.clock()

        engine.clock.advance(minutes=5)
        assert await engine.scan() == 0

        engine.clock.advance(minutes=6)
        assert await engine.scan() == 1


class TestLinkAndTerminate:
    """链接与终止事件测试类"""

    @pytest.mark.asyncio
    async def test_link_throw_jumps_to_catch(self, engine, builder):
        """测试链接抛出跳转到同名捕获"""
        builder.element("start", "eventStart")
        builder.element("throw", "eventIntermediateLinkThrow", linkName="jump")
        builder.element("catch", "eventIntermediateLinkCatch", linkName="jump")
        builder.element("task", "task", actionList=[{"type": "setVariable", "name": "jumped", "value": True}])
        builder.element("end", "eventEnd")
        builder.chain("start", "throw")
        builder.chain("catch", "task", "end")

        process = await engine.start(builder.build())

        assert process.variables["jumped"] is True
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_link_without_catch_fails(self, engine, builder):
        """测试找不到同名捕获时链接抛出失败"""
        builder.element("start", "eventStart")
        builder.element("throw", "eventIntermediateLinkThrow", linkName="nowhere")
        builder.chain("start", "throw")

        process = await engine.start(builder.build())

        assert (await engine.node(process.id, "throw")).status == FlowNodeStatus.FAILED
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_terminate_end_interrupts_active_flows(self, engine, builder, manager):
        """测试终止结束事件中断其他分支"""
        builder.element("start", "eventStart")
        builder.element("fork", "gatewayParallel")
        builder.element("review", "taskUser")
        builder.element("stop", "eventEndTerminate")
        builder.element("end", "eventEnd")
        builder.flow("start", "fork")
        builder.flow("fork", "review")
        builder.flow("fork", "stop")
        builder.flow("review", "end")

        process = await engine.start(builder.build())

        assert process.status == ProcessStatus.ENDED
        review = await engine.node(process.id, "review")
        assert review.status == FlowNodeStatus.INTERRUPTED
        assert manager.user_task_service.tasks[review.data.user_task_id].is_canceled is True
