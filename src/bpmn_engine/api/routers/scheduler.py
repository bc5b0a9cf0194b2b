"""
调度 API 路由
"""
from fastapi import APIRouter, Depends
import logging

from ..models import ProcessPendingRequest, SchedulerResponse
from ..dependencies import get_manager, get_coordinator


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/process-parallel", response_model=SchedulerResponse)
async def process_parallel(
    coordinator = Depends(get_coordinator)
) -> SchedulerResponse:
    """为有待处理工作的流程树加锁并调度后台任务"""
    process_ids = await coordinator.process_parallel()
    return SchedulerResponse(count=len(process_ids), process_ids=process_ids)


@router.post("/process-pending", response_model=SchedulerResponse)
async def process_pending(
    request: ProcessPendingRequest,
    manager = Depends(get_manager)
) -> SchedulerResponse:
    """在当前请求内扫描并恢复等待节点"""
    count = await manager.scanner.process_pending_flows(request.root_process_id)
    process_ids = [request.root_process_id] if request.root_process_id else []
    return SchedulerResponse(count=count, process_ids=process_ids)
