"""
后台任务调度
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Callable, Awaitable, Optional, Set

from ..exceptions import SchedulingError


logger = logging.getLogger(__name__)


JobHandler = Callable[[str], Awaitable[None]]


class JobScheduler(ABC):
    """任务调度接口"""

    @abstractmethod
    async def schedule(self, job_name: str, target_id: str) -> None:
        """调度任务"""
        pass


@dataclass
class ScheduledJob:
    """已调度的任务"""
    job_name: str
    target_id: str
    scheduled_at: datetime = field(default_factory=datetime.utcnow)


class InMemoryJobScheduler(JobScheduler):
    """只记录调度请求，由调用方决定何时执行"""

    def __init__(self):
        self.jobs: List[ScheduledJob] = []

    async def schedule(self, job_name: str, target_id: str) -> None:
        self.jobs.append(ScheduledJob(job_name=job_name, target_id=target_id))


class AsyncioJobScheduler(JobScheduler):
    """
    基于 asyncio 的任务调度器

    每个任务作为独立的 asyncio.Task 运行，并发数受信号量限制。
    """

    def __init__(self, max_concurrent_jobs: int = 10):
        self.handlers: Dict[str, JobHandler] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._tasks: Set[asyncio.Task] = set()

    def register(self, job_name: str, handler: JobHandler):
        """注册任务处理器"""
        self.handlers[job_name] = handler
        logger.info(f"Registered job handler '{job_name}'")

    async def schedule(self, job_name: str, target_id: str) -> None:
        handler = self.handlers.get(job_name)
        if not handler:
            raise SchedulingError(f"No handler registered for job '{job_name}'")

        task = asyncio.create_task(self._run(job_name, handler, target_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Scheduled job '{job_name}' for {target_id}")

    async def _run(self, job_name: str, handler: JobHandler, target_id: str):
        async with self._semaphore:
            try:
                await handler(target_id)
            except Exception as e:
                logger.error(f"Job '{job_name}' failed for {target_id}: {e}", exc_info=True)

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    async def wait_all(self, timeout: Optional[float] = None):
        """等待所有已调度任务完成"""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def shutdown(self):
        """取消未完成的任务"""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Job scheduler stopped")
