"""
错误、升级、补偿与事件子流程测试
"""
import pytest

from bpmn_engine.core.propagator import match_code
from bpmn_engine.models.process import ProcessStatus, FlowNodeStatus


def sub_process_items(builder_factory, *inner):
    """s_start → inner... → s_end 的子流程元素列表"""
    sub = builder_factory()
    sub.element("s_start", "eventStart")
    names = ["s_start"]
    for element_id, element_type, params in inner:
        sub.element(element_id, element_type, **params)
        names.append(element_id)
    sub.element("s_end", "eventEnd")
    names.append("s_end")
    sub.chain(*names)
    return sub.items


def raise_error(code, message=""):
    return {"actionList": [{"type": "raiseError", "code": code, "message": message}]}


def set_variable(name, value):
    return {"actionList": [{"type": "setVariable", "name": name, "value": value}]}


class TestMatchCode:
    """处理器代码匹配测试类"""

    def test_exact_match_wins_over_fallback(self):
        candidates = [("any", None), ("e1", "E1")]
        assert match_code(candidates, "E1") == "e1"

    def test_fallback_catches_unknown_code(self):
        candidates = [("e1", "E1"), ("any", None)]
        assert match_code(candidates, "E9") == "any"

    def test_no_code_matches_only_codeless(self):
        assert match_code([("e1", "E1")], None) is None
        assert match_code([("e1", "E1"), ("any", "")], None) == "any"

    def test_no_match(self):
        assert match_code([("e1", "E1")], "E2") is None
        assert match_code([], "E1") is None


class TestErrorPropagation:
    """错误传播测试类"""

    def build(self, builder, builder_factory, boundary_code="E1", inner=None):
        inner = inner or ("fail", "task", raise_error("E1", "declined"))
        builder.element("start", "eventStart")
        builder.element("sub", "subProcess", dataList=sub_process_items(builder_factory, inner))
        builder.element("end", "eventEnd")
        builder.chain("start", "sub", "end")
        if boundary_code is not False:
            builder.element("on_error", "eventIntermediateErrorBoundary",
                            attachedToId="sub", errorCode=boundary_code)
            builder.element("handle", "task", **set_variable("handled", True))
            builder.element("end_error", "eventEnd")
            builder.chain("on_error", "handle", "end_error")
        return builder.build()

    @pytest.mark.asyncio
    async def test_error_is_caught_by_boundary(self, engine, builder, builder_factory):
        """测试子流程中的错误由父活动的错误边界事件处理"""
        process = await engine.start(self.build(builder, builder_factory))

        statuses = await engine.statuses(process.id)
        assert statuses["sub"] == "Failed"
        assert statuses["on_error"] == "Processed"
        assert statuses["handle"] == "Processed"
        assert "end" not in statuses
        assert process.status == ProcessStatus.ENDED
        assert process.variables["handled"] is True

        boundary = await engine.node(process.id, "on_error")
        assert boundary.data.code == "E1"
        assert boundary.data.message == "declined"

        (child,) = await engine.children(process.id)
        assert child.status == ProcessStatus.ENDED
        assert (await engine.node(child.id, "fail")).status == FlowNodeStatus.FAILED

    @pytest.mark.asyncio
    async def test_error_end_event_is_caught_by_boundary(self, engine, builder, builder_factory):
        """测试错误结束事件的代码传给父活动"""
        process = await engine.start(self.build(
            builder, builder_factory, inner=("raise", "eventEndError", {"errorCode": "E1"})
        ))

        assert (await engine.statuses(process.id))["on_error"] == "Processed"
        assert process.variables["handled"] is True

    @pytest.mark.asyncio
    async def test_codeless_boundary_catches_any_error(self, engine, builder, builder_factory):
        """测试无代码的错误边界事件兜底"""
        process = await engine.start(self.build(builder, builder_factory, boundary_code=""))

        assert process.variables["handled"] is True

    @pytest.mark.asyncio
    async def test_unmatched_error_ends_process(self, engine, builder, builder_factory):
        """测试代码不匹配时以错误结束父流程"""
        process = await engine.start(self.build(builder, builder_factory, boundary_code="E9"))

        statuses = await engine.statuses(process.id)
        assert statuses["sub"] == "Failed"
        assert "on_error" not in statuses
        assert "end" not in statuses
        assert process.status == ProcessStatus.ENDED
        assert "handled" not in process.variables

    @pytest.mark.asyncio
    async def test_unhandled_error_in_task_ends_process(self, engine, builder):
        """测试没有处理器的错误结束流程"""
        builder.element("start", "eventStart")
        builder.element("fail", "task", **raise_error("E1"))
        builder.element("end", "eventEnd")
        builder.chain("start", "fail", "end")

        process = await engine.start(builder.build())

        assert process.status == ProcessStatus.ENDED
        assert (await engine.node(process.id, "fail")).status == FlowNodeStatus.FAILED
        assert "end" not in await engine.statuses(process.id)

    @pytest.mark.asyncio
    async def test_failing_script_is_caught_without_code(self, engine, builder, manager):
        """测试脚本抛出的普通异常没有错误代码"""
        def broken(variables, target):
            raise ValueError("bad input")

        manager.action_registry.register_script("broken", broken)
        builder.element("start", "eventStart")
        builder.element("script", "taskScript", scriptName="broken")
        builder.element("end", "eventEnd")
        builder.element("on_error", "eventIntermediateErrorBoundary", attachedToId="script")
        builder.element("recover", "eventEnd")
        builder.chain("start", "script", "end")
        builder.chain("on_error", "recover")

        process = await engine.start(builder.build())

        boundary = await engine.node(process.id, "on_error")
        assert boundary.status == FlowNodeStatus.PROCESSED
        assert boundary.data.code is None
        assert boundary.data.message == "bad input"
        assert process.status == ProcessStatus.ENDED


class TestEscalation:
    """升级测试类"""

    def build(self, builder, builder_factory, cancel_activity):
        builder.element("start", "eventStart")
        builder.element("sub", "subProcess", dataList=sub_process_items(
            builder_factory, ("escalate", "eventIntermediateEscalationThrow", {"escalationCode": "LATE"})
        ))
        builder.element("end", "eventEnd")
        builder.element("on_late", "eventIntermediateEscalationBoundary", attachedToId="sub",
                        escalationCode="LATE", cancelActivity=cancel_activity)
        builder.element("notify", "task", **set_variable("escalated", True))
        builder.element("end_late", "eventEnd")
        builder.chain("start", "sub", "end")
        builder.chain("on_late", "notify", "end_late")
        return builder.build()

    @pytest.mark.asyncio
    async def test_non_interrupting_escalation(self, engine, builder, builder_factory):
        """测试非中断型升级边界事件，子流程继续"""
        process = await engine.start(self.build(builder, builder_factory, False))

        statuses = await engine.statuses(process.id)
        assert statuses["on_late"] == "Processed"
        assert statuses["sub"] == "Processed"
        assert statuses["end"] == "Processed"
        assert process.variables["escalated"] is True
        assert process.status == ProcessStatus.ENDED

        boundary = await engine.node(process.id, "on_late")
        assert boundary.data.caught_escalation_code == "LATE"

    @pytest.mark.asyncio
    async def test_interrupting_escalation(self, engine, builder, builder_factory):
        """测试中断型升级边界事件中断子流程"""
        process = await engine.start(self.build(builder, builder_factory, True))

        statuses = await engine.statuses(process.id)
        assert statuses["sub"] == "Interrupted"
        assert "end" not in statuses
        assert process.variables["escalated"] is True
        assert process.status == ProcessStatus.ENDED

        (child,) = await engine.children(process.id)
        assert child.status == ProcessStatus.INTERRUPTED

    @pytest.mark.asyncio
    async def test_unhandled_escalation_continues(self, engine, builder):
        """测试没有处理器的升级只记录日志"""
        builder.element("start", "eventStart")
        builder.element("escalate", "eventIntermediateEscalationThrow", escalationCode="LATE")
        builder.element("end", "eventEnd")
        builder.chain("start", "escalate", "end")

        process = await engine.start(builder.build())

        assert process.status == ProcessStatus.ENDED
        assert (await engine.statuses(process.id))["end"] == "Processed"


class TestCompensation:
    """补偿测试类"""

    def build(self, builder, manager, order):
        for name in ("undo_first", "undo_second"):
            manager.action_registry.register_script(
                name, lambda variables, target, name=name: order.append(name)
            )

        builder.element("start", "eventStart")
        builder.element("first", "task", **set_variable("first", True))
        builder.element("second", "task", **set_variable("second", True))
        builder.element("compensate", "eventIntermediateCompensationThrow")
        builder.element("end", "eventEnd")
        builder.chain("start", "first", "second", "compensate", "end")

        builder.element("c_first", "eventIntermediateCompensationBoundary", attachedToId="first")
        builder.element("h_first", "taskScript", scriptName="undo_first", isForCompensation=True)
        builder.element("c_second", "eventIntermediateCompensationBoundary", attachedToId="second")
        builder.element("h_second", "taskScript", scriptName="undo_second", isForCompensation=True)
        builder.flow("c_first", "h_first")
        builder.flow("c_second", "h_second")
        return builder.build()

    @pytest.mark.asyncio
    async def test_handlers_run_in_reverse_order(self, engine, builder, manager):
        """测试补偿处理器按完成顺序倒序执行"""
        order = []
        process = await engine.start(self.build(builder, manager, order))

        assert order == ["undo_second", "undo_first"]
        throw = await engine.node(process.id, "compensate")
        assert throw.status == FlowNodeStatus.PENDING
        assert len(throw.data.compensation_flow_node_ids) == 2

        h_second = await engine.node(process.id, "h_second")
        assert h_second.status == FlowNodeStatus.PROCESSED
        assert h_second.data.compensated_flow_node_id == (await engine.node(process.id, "second")).id

        assert await engine.scan() == 1
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_compensate_single_activity(self, engine, builder, manager):
        """测试只补偿指定的活动"""
        order = []
        flowchart = self.build(builder, manager, order)
        flowchart.get_element("compensate").params["activityId"] = "first"

        await engine.start(flowchart)

        assert order == ["undo_first"]


class TestEventSubProcesses:
    """事件子流程测试类"""

    def add_event_sub_process(self, builder, builder_factory, start_type, **start_params):
        inner = builder_factory()
        inner.element("e_start", start_type, **start_params)
        inner.element("record", "task", actionList=[
            {"type": "setVariable", "name": "caught", "value": "$__caughtErrorCode"},
            {"type": "setVariable", "name": "pinged", "value": True}
        ])
        inner.element("e_end", "eventEnd")
        inner.chain("e_start", "record", "e_end")
        builder.element("esp", "eventSubProcess", dataList=inner.items, returnVariableList=["pinged"])

    def standby_nodes(self, nodes):
        return [n for n in nodes if n.element_type.value.endswith("EventSubProcess")]

    @pytest.mark.asyncio
    async def test_error_event_sub_process(self, engine, builder, builder_factory):
        """测试错误事件子流程捕获流程中的错误"""
        builder.element("start", "eventStart")
        builder.element("fail", "task", **raise_error("E2", "boom"))
        builder.element("end", "eventEnd")
        builder.chain("start", "fail", "end")
        self.add_event_sub_process(builder, builder_factory, "eventStartError", errorCode="E2")

        process = await engine.start(builder.build())

        assert process.status == ProcessStatus.ENDED
        assert (await engine.node(process.id, "esp")).status == FlowNodeStatus.PROCESSED
        (child,) = await engine.children(process.id)
        assert child.status == ProcessStatus.ENDED
        assert child.variables["caught"] == "E2"
        assert child.variables["__caughtErrorMessage"] == "boom"
        assert process.variables["pinged"] is True

    @pytest.mark.asyncio
    async def test_non_interrupting_signal_event_sub_process(self, engine, builder, builder_factory, manager):
        """测试非中断型信号事件子流程可重复触发"""
        builder.element("start", "eventStart")
        builder.element("review", "taskUser")
        builder.element("end", "eventEnd")
        builder.chain("start", "review", "end")
        self.add_event_sub_process(builder, builder_factory, "eventStartSignal",
                                   signal="ping", isInterrupting=False)

        process = await engine.start(builder.build())
        standby = self.standby_nodes(await engine.nodes(process.id, "esp"))
        assert [n.status for n in standby] == [FlowNodeStatus.STANDBY]

        assert await manager.scanner.broadcast_signal("ping") == 1

        stored = await engine.process(process.id)
        assert stored.status == ProcessStatus.STARTED
        assert stored.variables["pinged"] is True
        assert (await engine.node(process.id, "review")).status == FlowNodeStatus.IN_PROCESS
        assert len(await engine.children(process.id)) == 1

        assert await manager.scanner.broadcast_signal("ping") == 1
        assert len(await engine.children(process.id)) == 2

        await manager.complete_flow(await engine.node(process.id, "review"))

        assert (await engine.process(process.id)).status == ProcessStatus.ENDED
        standby = self.standby_nodes(await engine.nodes(process.id, "esp"))
        assert [n.status for n in standby] == [
            FlowNodeStatus.PROCESSED, FlowNodeStatus.PROCESSED, FlowNodeStatus.REJECTED
        ]

    @pytest.mark.asyncio
    async def test_interrupting_signal_event_sub_process(self, engine, builder, builder_factory, manager):
        """测试中断型信号事件子流程中断所属流程"""
        builder.element("start", "eventStart")
        builder.element("review", "taskUser")
        builder.element("end", "eventEnd")
        builder.chain("start", "review", "end")
        self.add_event_sub_process(builder, builder_factory, "eventStartSignal",
                                   signal="cancel", isInterrupting=True)

        process = await engine.start(builder.build())
        assert await manager.scanner.broadcast_signal("cancel") == 1

        assert (await engine.process(process.id)).status == ProcessStatus.INTERRUPTED
        review = await engine.node(process.id, "review")
        assert review.status == FlowNodeStatus.INTERRUPTED
        assert manager.user_task_service.tasks[review.data.user_task_id].is_canceled is True
        (child,) = await engine.children(process.id)
        assert child.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_conditional_event_sub_process_rearms_after_reset(
        self, engine, builder, builder_factory, target
    ):
        """测试条件事件子流程在条件重新变为假之后才再次触发"""
        builder.element("start", "eventStart")
        builder.element("review", "taskUser")
        builder.element("end", "eventEnd")
        builder.chain("start", "review", "end")
        self.add_event_sub_process(builder, builder_factory, "eventStartConditional", isInterrupting=False,
                                   conditionsAll=[{"attribute": "status", "comparison": "equals", "value": "Hot"}])

        process = await engine.start(builder.build())
        await engine.scan()
        assert await engine.children(process.id) == []

        target.attributes["status"] = "Hot"
        await engine.scan()
        assert len(await engine.children(process.id)) == 1

        await engine.scan()
        assert len(await engine.children(process.id)) == 1

        target.attributes["status"] = "Cold"
        await engine.scan()
        target.attributes["status"] = "Hot"
        await engine.scan()

        assert len(await engine.children(process.id)) == 2
        assert (await engine.process(process.id)).status == ProcessStatus.STARTED

    @pytest.mark.asyncio
    async def test_timer_event_sub_process_fires_once(self, engine, builder, builder_factory):
        """测试定时器事件子流程只触发一次"""
        builder.element("start", "eventStart")
        builder.element("review", "taskUser")
        builder.element("end", "eventEnd")
        builder.chain("start", "review", "end")
        self.add_event_sub_process(builder, builder_factory, "eventStartTimer", isInterrupting=False,
                                   timerShift=1, timerShiftUnits="hours")

        process = await engine.start(builder.build())

        engine.clock.advance(hours=1)
        assert await engine.scan() == 1
        assert len(await engine.children(process.id)) == 1

        engine.clock.advance(hours=5)
        assert await engine.scan() == 0
        assert len(await engine.children(process.id)) == 1
