"""
并行调度协调器
"""
import logging
from typing import Dict, List, Optional, TYPE_CHECKING

from ..models.process import to_timestamp_ms
from ..storage.repository import RootCandidate
from ..integrations.job_scheduler import JobScheduler, InMemoryJobScheduler, AsyncioJobScheduler
from ..exceptions import SchedulingError

if TYPE_CHECKING:
    from .manager import ProcessManager


logger = logging.getLogger(__name__)


PROCESS_ROOT_PROCESS_FLOWS_JOB = "ProcessRootProcessFlows"


class ProcessRootProcessFlowsJob:
    """处理一棵流程树的等待节点，运行前根流程必须已被加锁"""

    def __init__(self, manager: "ProcessManager"):
        self.manager = manager

    async def run(self, root_process_id: str):
        manager = self.manager
        process = await manager.get_process(root_process_id)
        if not process:
            logger.info(f"Root process {root_process_id} not found")
            return

        if not process.is_locked:
            raise SchedulingError(f"Root process {root_process_id} is not locked")

        process.visit_timestamp = to_timestamp_ms(manager.now())
        await manager.save_process(process, ["visit_timestamp"])

        await manager.scanner.process_pending_flows(root_process_id)

        process.visit_timestamp = to_timestamp_ms(manager.now())
        process.is_locked = False
        await manager.save_process(process, ["visit_timestamp", "is_locked"])

    async def __call__(self, root_process_id: str):
        await self.run(root_process_id)


class ParallelCoordinator:
    """
    并行调度协调器

    选出有待处理工作的流程树，在根流程上加锁后为每棵树调度一个任务。
    """

    def __init__(self, manager: "ProcessManager", job_scheduler: Optional[JobScheduler] = None):
        self.manager = manager
        self.job_scheduler = job_scheduler or InMemoryJobScheduler()
        self.job = ProcessRootProcessFlowsJob(manager)

        if isinstance(self.job_scheduler, AsyncioJobScheduler):
            self.job_scheduler.register(PROCESS_ROOT_PROCESS_FLOWS_JOB, self.job.run)

    async def unlock_processes(self) -> int:
        """解锁超时未释放的根流程"""
        manager = self.manager
        before = to_timestamp_ms(manager.now() - manager.config.process_unlock_period)
        count = await manager.storage.processes.unlock_stale(before)
        if count:
            logger.warning(f"Unlocked {count} stale locked processes")
        return count

    async def get_candidates(self) -> List[RootCandidate]:
        """有等待节点或已触发信号的根流程，最久未访问的优先"""
        manager = self.manager
        limit = manager.config.parallel_batch_size
        now = manager.now()

        candidates: Dict[str, RootCandidate] = {}
        pending = await manager.storage.flow_nodes.find_pending_roots(now, limit)
        triggered = await manager.storage.signal_listeners.find_triggered_roots(limit)
        for candidate in pending + triggered:
            existing = candidates.get(candidate.root_process_id)
            if existing is None:
                candidates[candidate.root_process_id] = candidate
            else:
                existing.number = min(existing.number, candidate.number)

        result = sorted(candidates.values(), key=lambda c: (c.visit_timestamp, c.number))
        return result[:limit]

    async def process_parallel(self) -> List[str]:
        """加锁并调度根流程，返回已调度的根流程ID"""
        manager = self.manager
        await self.unlock_processes()

        scheduled = []
        for candidate in await self.get_candidates():
            locked = await manager.storage.processes.try_lock(
                candidate.root_process_id, to_timestamp_ms(manager.now())
            )
            if not locked:
                logger.info(f"Root process {candidate.root_process_id} is locked by another worker, skipping")
                continue

            process = await manager.get_process(candidate.root_process_id)
            await manager.publish_process_update(process)

            await self.job_scheduler.schedule(PROCESS_ROOT_PROCESS_FLOWS_JOB, process.id)
            scheduled.append(process.id)

        if scheduled:
            logger.info(f"Scheduled {len(scheduled)} root processes")
        return scheduled
