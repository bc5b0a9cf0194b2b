"""
并行调度协调器与任务调度器测试
"""
import asyncio
import pytest

from bpmn_engine.core.coordinator import ParallelCoordinator, PROCESS_ROOT_PROCESS_FLOWS_JOB
from bpmn_engine.exceptions import SchedulingError
from bpmn_engine.integrations.job_scheduler import InMemoryJobScheduler, AsyncioJobScheduler
from bpmn_engine.models.process import Target, ProcessStatus, to_timestamp_ms


def timer_flowchart(builder):
    builder.element("start", "eventStart")
    builder.element("timer", "eventIntermediateTimerCatch", timerShift=1, timerShiftUnits="hours")
    builder.element("end", "eventEnd")
    builder.chain("start", "timer", "end")
    return builder.build()


async def start_two(engine, builder, manager):
    flowchart = timer_flowchart(builder)
    first = await engine.start(flowchart)
    other = manager.target_resolver.add(Target(type="Lead", id="lead-2"))
    second = await manager.start_process(other, flowchart)
    return first, second


class TestParallelCoordinator:
    """并行调度协调器测试类"""

    @pytest.mark.asyncio
    async def test_schedules_due_roots(self, engine, builder, manager):
        """测试为有到期节点的根流程加锁并调度"""
        first, second = await start_two(engine, builder, manager)
        scheduler = InMemoryJobScheduler()
        coordinator = ParallelCoordinator(manager, scheduler)

        assert await coordinator.process_parallel() == []

        engine.clock.advance(hours=1)
        scheduled = await coordinator.process_parallel()

        assert sorted(scheduled) == sorted([first.id, second.id])
        assert [job.job_name for job in scheduler.jobs] == [PROCESS_ROOT_PROCESS_FLOWS_JOB] * 2
        assert (await engine.process(first.id)).is_locked is True

        # 已加锁的根流程不会重复调度
        assert await coordinator.process_parallel() == []

    @pytest.mark.asyncio
    async def test_concurrent_coordinators_lock_each_root_once(self, engine, builder, manager):
        """测试两个协调器同时运行时每个根流程只被调度一次"""
        first, second = await start_two(engine, builder, manager)
        schedulers = [InMemoryJobScheduler(), InMemoryJobScheduler()]
        coordinators = [ParallelCoordinator(manager, scheduler) for scheduler in schedulers]
        engine.clock.advance(hours=1)

        results = await asyncio.gather(*(c.process_parallel() for c in coordinators))

        scheduled = results[0] + results[1]
        assert sorted(scheduled) == sorted([first.id, second.id])
        assert sum(len(scheduler.jobs) for scheduler in schedulers) == 2

    @pytest.mark.asyncio
    async def test_root_locked_between_selection_and_lock_is_skipped(self, engine, builder, manager):
        """测试选出候选后被其他调度方抢先加锁的根流程"""
        process = await engine.start(timer_flowchart(builder))
        scheduler = InMemoryJobScheduler()
        coordinator = ParallelCoordinator(manager, scheduler)
        engine.clock.advance(hours=1)

        candidates = await coordinator.get_candidates()
        assert [c.root_process_id for c in candidates] == [process.id]
        assert await manager.storage.processes.try_lock(process.id, to_timestamp_ms(manager.now())) is True

        async def selected():
            return candidates

        coordinator.get_candidates = selected
        assert await coordinator.process_parallel() == []
        assert scheduler.jobs == []

    @pytest.mark.asyncio
    async def test_job_processes_tree_and_unlocks(self, engine, builder, manager):
        """测试任务处理流程树并释放锁"""
        first, second = await start_two(engine, builder, manager)
        scheduler = InMemoryJobScheduler()
        coordinator = ParallelCoordinator(manager, scheduler)
        engine.clock.advance(hours=1)
        await coordinator.process_parallel()

        for job in scheduler.jobs:
            await coordinator.job.run(job.target_id)

        for process_id in (first.id, second.id):
            stored = await engine.process(process_id)
            assert stored.status == ProcessStatus.ENDED
            assert stored.is_locked is False

    @pytest.mark.asyncio
    async def test_job_requires_locked_root(self, engine, builder, manager):
        """测试未加锁的根流程不能运行任务"""
        process = await engine.start(timer_flowchart(builder))
        coordinator = ParallelCoordinator(manager)

        with pytest.raises(SchedulingError):
            await coordinator.job.run(process.id)

    @pytest.mark.asyncio
    async def test_stale_locks_are_released(self, engine, builder, manager):
        """测试超时未释放的锁被解除"""
        process = await engine.start(timer_flowchart(builder))
        coordinator = ParallelCoordinator(manager, InMemoryJobScheduler())
        engine.clock.advance(hours=1)
        assert await coordinator.process_parallel() == [process.id]

        engine.clock.advance(hours=1)
        assert await coordinator.unlock_processes() == 0

        engine.clock.advance(hours=3)
        assert await coordinator.process_parallel() == [process.id]

    @pytest.mark.asyncio
    async def test_triggered_signals_make_roots_candidates(self, engine, builder, manager):
        """测试已触发的信号使根流程成为候选"""
        builder.element("start", "eventStart")
        builder.element("wait", "eventIntermediateSignalCatch", signal="go")
        builder.element("end", "eventEnd")
        builder.chain("start", "wait", "end")
        process = await engine.start(builder.build())
        scheduler = InMemoryJobScheduler()
        coordinator = ParallelCoordinator(manager, scheduler)

        assert await coordinator.process_parallel() == []

        await manager.scanner.trigger_signal("go")
        assert await coordinator.process_parallel() == [process.id]

        await coordinator.job.run(process.id)
        assert (await engine.process(process.id)).status == ProcessStatus.ENDED

    @pytest.mark.asyncio
    async def test_asyncio_scheduler_runs_jobs(self, engine, builder, manager):
        """测试 asyncio 调度器运行已注册的任务"""
        first, second = await start_two(engine, builder, manager)
        scheduler = AsyncioJobScheduler(max_concurrent_jobs=2)
        coordinator = ParallelCoordinator(manager, scheduler)
        engine.clock.advance(hours=1)

        await coordinator.process_parallel()
        await scheduler.wait_all(timeout=5)

        assert scheduler.running_count == 0
        assert (await engine.process(first.id)).status == ProcessStatus.ENDED
        assert (await engine.process(second.id)).status == ProcessStatus.ENDED


class TestAsyncioJobScheduler:
    """asyncio 任务调度器测试类"""

    @pytest.mark.asyncio
    async def test_unknown_job_is_rejected(self):
        scheduler = AsyncioJobScheduler()

        with pytest.raises(SchedulingError):
            await scheduler.schedule("missing", "id-1")

    @pytest.mark.asyncio
    async def test_failing_job_is_isolated(self):
        """测试任务异常只记录日志"""
        scheduler = AsyncioJobScheduler()
        seen = []

        async def handler(target_id):
            seen.append(target_id)
            if target_id == "bad":
                raise RuntimeError("boom")

        scheduler.register("job", handler)
        await scheduler.schedule("job", "bad")
        await scheduler.schedule("job", "good")
        await scheduler.wait_all(timeout=5)

        assert sorted(seen) == ["bad", "good"]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self):
        scheduler = AsyncioJobScheduler()
        started = asyncio.Event()

        async def handler(target_id):
            started.set()
            await asyncio.sleep(60)

        scheduler.register("slow", handler)
        await scheduler.schedule("slow", "id-1")
        await asyncio.wait_for(started.wait(), timeout=5)

        await scheduler.shutdown()

        assert scheduler.running_count == 0
