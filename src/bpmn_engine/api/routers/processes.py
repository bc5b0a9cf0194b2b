"""
流程实例 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from typing import Optional
import logging

from ..models import (
    ProcessStartRequest, ProcessResponse, FlowNodeResponse,
    CompensateRequest, EscalateRequest, PaginatedResponse, SuccessResponse
)
from ..dependencies import get_manager, get_current_user
from ...models.process import Process, ProcessStatus
from ...storage.repository import FlowNodeFilter
from ...exceptions import StructuralError, TargetMismatchError


logger = logging.getLogger(__name__)
router = APIRouter()


async def _load_process(manager, process_id: str) -> Process:
    process = await manager.get_process(process_id)
    if not process:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Process {process_id} not found"
            }
        )
    return process


@router.post("/", response_model=ProcessResponse, status_code=status.HTTP_201_CREATED)
async def start_process(
    request: ProcessStartRequest,
    manager = Depends(get_manager),
    current_user = Depends(get_current_user)
) -> ProcessResponse:
    """为目标对象启动流程"""
    flowchart = await manager.storage.flowcharts.get(request.flowchart_id)
    if not flowchart:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Flowchart {request.flowchart_id} not found"
            }
        )
    if not flowchart.is_active:
        raise StructuralError(f"Flowchart {flowchart.id} is not active")
    if flowchart.target_type and flowchart.target_type != request.target_type:
        raise TargetMismatchError(
            f"Flowchart {flowchart.id} expects target type '{flowchart.target_type}', "
            f"got '{request.target_type}'"
        )

    target = await manager.target_resolver.get_entity(request.target_type, request.target_id)
    if not target:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Target {request.target_type} '{request.target_id}' not found"
            }
        )

    process = Process(
        flowchart_id=flowchart.id,
        name=flowchart.name,
        variables=dict(request.variables),
        created_at=manager.now()
    )
    process = await manager.start_process(
        target,
        flowchart,
        start_element_id=request.start_element_id,
        created_process=process,
        signal_params=request.signal_params
    )

    logger.info(f"Process {process.id} started by {current_user['id']}")
    return ProcessResponse.from_process(process)


@router.get("/", response_model=PaginatedResponse)
async def list_processes(
    status_filter: Optional[ProcessStatus] = Query(None, alias="status", description="流程状态"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    manager = Depends(get_manager)
) -> PaginatedResponse:
    """列出流程"""
    processes = await manager.storage.processes.list(offset=offset, limit=limit, status=status_filter)
    items = [ProcessResponse.from_process(p) for p in processes]
    return PaginatedResponse(total=len(items), offset=offset, limit=limit, items=items)


@router.get("/{process_id}", response_model=ProcessResponse)
async def get_process(
    process_id: str,
    manager = Depends(get_manager)
) -> ProcessResponse:
    """获取流程"""
    process = await _load_process(manager, process_id)
    return ProcessResponse.from_process(process)


@router.get("/{process_id}/flow-nodes", response_model=PaginatedResponse)
async def list_flow_nodes(
    process_id: str,
    manager = Depends(get_manager)
) -> PaginatedResponse:
    """列出流程的节点（按序号）"""
    await _load_process(manager, process_id)
    flow_nodes = await manager.storage.flow_nodes.find(FlowNodeFilter(process_id=process_id))
    items = [FlowNodeResponse.from_flow_node(n) for n in flow_nodes]
    return PaginatedResponse(total=len(items), offset=0, limit=len(items), items=items)


@router.post("/{process_id}/interrupt", response_model=ProcessResponse)
async def interrupt_process(
    process_id: str,
    manager = Depends(get_manager),
    current_user = Depends(get_current_user)
) -> ProcessResponse:
    """中断流程"""
    process = await _load_process(manager, process_id)
    await manager.interrupt_process(process)
    logger.info(f"Process {process_id} interrupted by {current_user['id']}")
    return ProcessResponse.from_process(process)


@router.post("/{process_id}/stop", response_model=ProcessResponse)
async def stop_process(
    process_id: str,
    manager = Depends(get_manager),
    current_user = Depends(get_current_user)
) -> ProcessResponse:
    """停止流程"""
    process = await _load_process(manager, process_id)
    await manager.stop_process(process)
    logger.info(f"Process {process_id} stopped by {current_user['id']}")
    return ProcessResponse.from_process(process)


@router.post("/{process_id}/pause", response_model=ProcessResponse)
async def pause_process(
    process_id: str,
    manager = Depends(get_manager)
) -> ProcessResponse:
    """暂停流程"""
    process = await _load_process(manager, process_id)
    await manager.pause_process(process)
    return ProcessResponse.from_process(process)


@router.post("/{process_id}/resume", response_model=ProcessResponse)
async def resume_process(
    process_id: str,
    manager = Depends(get_manager)
) -> ProcessResponse:
    """恢复暂停的流程"""
    process = await _load_process(manager, process_id)
    await manager.resume_process(process)
    return ProcessResponse.from_process(process)


@router.post("/{process_id}/compensate", response_model=SuccessResponse)
async def compensate_process(
    process_id: str,
    request: CompensateRequest,
    manager = Depends(get_manager)
) -> SuccessResponse:
    """触发补偿，按完成顺序的倒序执行补偿处理器"""
    process = await _load_process(manager, process_id)
    async with manager.dispatch_scope():
        flow_node_ids = await manager.propagator.compensate(process, request.activity_id)
    return SuccessResponse(
        message=f"Compensation started with {len(flow_node_ids)} handlers",
        data={"flow_node_ids": flow_node_ids}
    )


@router.post("/{process_id}/escalate", response_model=SuccessResponse)
async def escalate_process(
    process_id: str,
    request: EscalateRequest,
    manager = Depends(get_manager)
) -> SuccessResponse:
    """触发升级"""
    process = await _load_process(manager, process_id)
    async with manager.dispatch_scope():
        await manager.propagator.escalate(process, request.code)
    return SuccessResponse(message=f"Escalation '{request.code}' raised in process {process_id}")


@router.delete("/{process_id}", response_model=SuccessResponse)
async def delete_process(
    process_id: str,
    manager = Depends(get_manager),
    current_user = Depends(get_current_user)
) -> SuccessResponse:
    """删除流程及其子流程"""
    process = await _load_process(manager, process_id)
    await manager.remove_process(process)
    logger.info(f"Process {process_id} removed by {current_user['id']}")
    return SuccessResponse(message=f"Process {process_id} removed")
