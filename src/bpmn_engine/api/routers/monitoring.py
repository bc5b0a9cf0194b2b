"""
监控 API 路由
"""
from fastapi import APIRouter, Depends
from typing import Dict, Any
import logging

from ..models import HealthCheckResponse
from ... import __version__
from ..dependencies import get_manager, get_app_state
from ...models.process import ProcessStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    manager = Depends(get_manager)
) -> HealthCheckResponse:
    """健康检查"""
    checks = {}

    try:
        await manager.storage.flowcharts.list(limit=1)
        checks["storage"] = True
    except Exception as e:
        logger.error(f"Storage health check failed: {e}")
        checks["storage"] = False

    checks["job_scheduler"] = get_app_state().get("job_scheduler") is not None
    checks["event_bus"] = manager.event_bus is not None

    return HealthCheckResponse(
        status="healthy" if all(checks.values()) else "unhealthy",
        version=__version__,
        checks=checks
    )


@router.get("/stats")
async def get_stats(
    manager = Depends(get_manager)
) -> Dict[str, Any]:
    """流程数量统计（每种状态最多统计一批）"""
    batch_size = manager.config.parallel_batch_size
    counts = {}
    for process_status in ProcessStatus:
        processes = await manager.storage.processes.list(limit=batch_size, status=process_status)
        counts[process_status.value] = len(processes)

    job_scheduler = get_app_state().get("job_scheduler")
    return {
        "processes": counts,
        "running_jobs": job_scheduler.running_count if job_scheduler else 0
    }
