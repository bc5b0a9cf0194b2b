"""
网关测试
"""
import pytest

from bpmn_engine.models.process import ProcessStatus, FlowNodeStatus


def amount_over(value):
    return [{"attribute": "amount", "comparison": "greaterThan", "value": value}]


class TestExclusiveGateway:
    """排他网关测试类"""

    def build(self, builder):
        builder.element("start", "eventStart")
        builder.element("gateway", "gatewayExclusive", flowList=[
            {"id": "to_big", "conditionsAll": amount_over(50)},
            {"id": "to_huge", "conditionsAll": amount_over(500)},
        ], defaultFlowId="to_small")
        builder.element("big", "eventEnd")
        builder.element("huge", "eventEnd")
        builder.element("small", "eventEnd")
        builder.flow("start", "gateway")
        builder.flow("gateway", "big", "to_big")
        builder.flow("gateway", "huge", "to_huge")
        builder.flow("gateway", "small", "to_small")
        return builder.build()

    @pytest.mark.asyncio
    async def test_first_matching_flow_is_taken(self, engine, builder, target):
        """测试按顺序选择第一条满足条件的分支"""
        target.attributes["amount"] = 1000
        process = await engine.start(self.build(builder))

        statuses = await engine.statuses(process.id)
        assert statuses["big"] == "Processed"
        assert "huge" not in statuses
        assert "small" not in statuses
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_default_flow_when_nothing_matches(self, engine, builder, target):
        """测试没有满足的条件时走默认分支"""
        target.attributes["amount"] = 10
        process = await engine.start(self.build(builder))

        statuses = await engine.statuses(process.id)
        assert statuses["small"] == "Processed"
        assert "big" not in statuses

    @pytest.mark.asyncio
    async def test_no_match_without_default_ends_flow(self, engine, builder, target):
        """测试没有匹配也没有默认分支时结束令牌路径"""
        target.attributes["amount"] = 10
        builder.element("start", "eventStart")
        builder.element("gateway", "gatewayExclusive", flowList=[
            {"id": "to_a", "conditionsAll": amount_over(50)},
        ])
        builder.element("a", "eventEnd")
        builder.element("b", "eventEnd")
        builder.flow("start", "gateway")
        builder.flow("gateway", "a", "to_a")
        builder.flow("gateway", "b")

        process = await engine.start(builder.build())

        statuses = await engine.statuses(process.id)
        assert statuses["gateway"] == "Rejected"
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_conditions_on_variables(self, engine, builder):
        """测试条件读取流程变量"""
        builder.element("start", "eventStart")
        builder.element("prepare", "task", actionList=[
            {"type": "setVariable", "name": "score", "value": 7}
        ])
        builder.element("gateway", "gatewayExclusive", flowList=[
            {"id": "to_pass", "conditionsAll": [
                {"attribute": "$score", "comparison": "greaterThanOrEquals", "value": 5}
            ]},
        ], defaultFlowId="to_fail")
        builder.element("pass", "eventEnd")
        builder.element("fail", "eventEnd")
        builder.chain("start", "prepare", "gateway")
        builder.flow("gateway", "pass", "to_pass")
        builder.flow("gateway", "fail", "to_fail")

        process = await engine.start(builder.build())

        assert (await engine.statuses(process.id))["pass"] == "Processed"


class TestParallelGateway:
    """并行网关测试类"""

    def build(self, builder, branch_b="task"):
        builder.element("start", "eventStart")
        builder.element("fork", "gatewayParallel")
        builder.element("a", "task", actionList=[{"type": "setVariable", "name": "a", "value": 1}])
        builder.element("b", branch_b)
        builder.element("join", "gatewayParallel")
        builder.element("end", "eventEnd")
        builder.flow("start", "fork")
        builder.flow("fork", "a")
        builder.flow("fork", "b")
        builder.flow("a", "join")
        builder.flow("b", "join")
        builder.flow("join", "end")
        return builder.build()

    @pytest.mark.asyncio
    async def test_join_fires_exactly_once(self, engine, builder):
        """测试汇合网关只在最后一个分支到达时推进一次"""
        process = await engine.start(self.build(builder))

        joins = await engine.nodes(process.id, "join")
        assert sorted(n.status.value for n in joins) == ["Processed", "Rejected"]
        assert len(await engine.nodes(process.id, "end")) == 1
        assert process.status == ProcessStatus.ENDED
        assert process.variables["a"] == 1

    @pytest.mark.asyncio
    async def test_branches_share_divergent_flow_node(self, engine, builder):
        """测试分支节点记录分叉节点"""
        process = await engine.start(self.build(builder))

        fork = await engine.node(process.id, "fork")
        a = await engine.node(process.id, "a")
        b = await engine.node(process.id, "b")
        end = await engine.node(process.id, "end")
        assert a.divergent_flow_node_id == fork.id
        assert b.divergent_flow_node_id == fork.id
        # 成对的分叉与汇合之后恢复分叉前的 divergent
        assert end.divergent_flow_node_id is None

    @pytest.mark.asyncio
    async def test_join_waits_for_slow_branch(self, engine, builder, manager):
        """测试汇合等待未完成的分支"""
        process = await engine.start(self.build(builder, branch_b="taskUser"))

        assert process.status == ProcessStatus.STARTED
        joins = await engine.nodes(process.id, "join")
        assert [n.status for n in joins] == [FlowNodeStatus.REJECTED]

        await manager.complete_flow(await engine.node(process.id, "b"))

        joins = await engine.nodes(process.id, "join")
        assert [n.status for n in joins] == [FlowNodeStatus.REJECTED, FlowNodeStatus.PROCESSED]
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED


class TestInclusiveGateway:
    """包容网关测试类"""

    def build(self, builder):
        builder.element("start", "eventStart")
        builder.element("fork", "gatewayInclusive", flowList=[
            {"id": "to_a", "conditionsAll": amount_over(50)},
            {"id": "to_b", "conditionsAll": amount_over(500)},
            {"id": "to_c", "conditionsAll": [
                {"attribute": "status", "comparison": "equals", "value": "New"}
            ]},
        ], defaultFlowId="to_d")
        for name in ("a", "b", "c", "d"):
            builder.element(name, "task", actionList=[
                {"type": "setVariable", "name": name, "value": True}
            ])
        builder.element("join", "gatewayInclusive")
        builder.element("end", "eventEnd")
        builder.flow("start", "fork")
        for name in ("a", "b", "c", "d"):
            builder.flow("fork", name, f"to_{name}")
            builder.flow(name, "join")
        builder.flow("join", "end")
        return builder.build()

    @pytest.mark.asyncio
    async def test_all_matching_flows_are_taken(self, engine, builder, target):
        """测试所有满足条件的分支都被执行，汇合只推进一次"""
        target.attributes.update({"amount": 100, "status": "New"})
        process = await engine.start(self.build(builder))

        statuses = await engine.statuses(process.id)
        assert statuses["a"] == "Processed"
        assert statuses["c"] == "Processed"
        assert "b" not in statuses
        assert "d" not in statuses

        joins = await engine.nodes(process.id, "join")
        assert sorted(n.status.value for n in joins) == ["Processed", "Rejected"]
        assert len(await engine.nodes(process.id, "end")) == 1
        assert process.status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_default_flow_when_nothing_matches(self, engine, builder, target):
        """测试没有满足的条件时只走默认分支"""
        target.attributes.update({"amount": 1, "status": "Old"})
        process = await engine.start(self.build(builder))

        statuses = await engine.statuses(process.id)
        assert statuses["d"] == "Processed"
        assert [n.status for n in await engine.nodes(process.id, "join")] == [FlowNodeStatus.PROCESSED]
        assert process.variables == {"d": True}


class TestEventBasedGateway:
    """基于事件的网关测试类"""

    def build(self, builder):
        builder.element("start", "eventStart")
        builder.element("gateway", "gatewayEventBased")
        builder.element("timeout", "eventIntermediateTimerCatch", timerShift=1, timerShiftUnits="days")
        builder.element("approved", "eventIntermediateSignalCatch", signal="approved")
        builder.element("end_timeout", "eventEnd")
        builder.element("end_approved", "eventEnd")
        builder.flow("start", "gateway")
        builder.flow("gateway", "timeout")
        builder.flow("gateway", "approved")
        builder.flow("timeout", "end_timeout")
        builder.flow("approved", "end_approved")
        return builder.build()

    @pytest.mark.asyncio
    async def test_first_event_wins(self, engine, builder, manager):
        """测试第一个触发的事件拒绝其余等待的事件"""
        process = await engine.start(self.build(builder))

        assert (await engine.node(process.id, "timeout")).status == FlowNodeStatus.PENDING
        assert (await engine.node(process.id, "approved")).status == FlowNodeStatus.PENDING
        assert (await engine.node(process.id, "gateway")).status == FlowNodeStatus.PROCESSED

        assert await manager.scanner.broadcast_signal("approved") == 1

        statuses = await engine.statuses(process.id)
        assert statuses["approved"] == "Processed"
        assert statuses["timeout"] == "Rejected"
        assert statuses["end_approved"] == "Processed"
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

        engine.clock.advance(days=2)
        assert await engine.scan() == 0

    @pytest.mark.asyncio
    async def test_timer_wins(self, engine, builder, manager):
        """测试定时器先到期"""
        process = await engine.start(self.build(builder))

        engine.clock.advance(days=1)
        assert await engine.scan() == 1

        statuses = await engine.statuses(process.id)
        assert statuses["timeout"] == "Processed"
        assert statuses["approved"] == "Rejected"
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED
        assert await manager.scanner.broadcast_signal("approved") == 0
