"""
流程节点 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, status
import logging

from ..models import FlowNodeResponse
from ..dependencies import get_manager, get_current_user
from ...models.process import FlowNode


logger = logging.getLogger(__name__)
router = APIRouter()


async def _load_flow_node(manager, flow_node_id: str) -> FlowNode:
    flow_node = await manager.get_flow_node(flow_node_id)
    if not flow_node or flow_node.is_deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Flow node {flow_node_id} not found"
            }
        )
    return flow_node


@router.get("/{flow_node_id}", response_model=FlowNodeResponse)
async def get_flow_node(
    flow_node_id: str,
    manager = Depends(get_manager)
) -> FlowNodeResponse:
    """获取流程节点"""
    flow_node = await _load_flow_node(manager, flow_node_id)
    return FlowNodeResponse.from_flow_node(flow_node)


@router.post("/{flow_node_id}/complete", response_model=FlowNodeResponse)
async def complete_flow_node(
    flow_node_id: str,
    manager = Depends(get_manager),
    current_user = Depends(get_current_user)
) -> FlowNodeResponse:
    """完成处于 InProcess 状态的节点，例如用户任务"""
    flow_node = await _load_flow_node(manager, flow_node_id)
    await manager.complete_flow(flow_node)
    logger.info(f"Flow node {flow_node_id} completed by {current_user['id']}")
    return FlowNodeResponse.from_flow_node(await _load_flow_node(manager, flow_node_id))


@router.post("/{flow_node_id}/fail", response_model=FlowNodeResponse)
async def fail_flow_node(
    flow_node_id: str,
    manager = Depends(get_manager),
    current_user = Depends(get_current_user)
) -> FlowNodeResponse:
    """使节点失败，错误沿边界事件或父流程传播"""
    flow_node = await _load_flow_node(manager, flow_node_id)
    await manager.fail_flow(flow_node)
    logger.info(f"Flow node {flow_node_id} failed by {current_user['id']}")
    return FlowNodeResponse.from_flow_node(await _load_flow_node(manager, flow_node_id))


@router.post("/{flow_node_id}/proceed", response_model=FlowNodeResponse)
async def proceed_flow_node(
    flow_node_id: str,
    manager = Depends(get_manager)
) -> FlowNodeResponse:
    """立即恢复一个等待中的节点"""
    flow_node = await _load_flow_node(manager, flow_node_id)
    if not await manager.proceed_pending_flow(flow_node):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "not_pending",
                "message": f"Flow node {flow_node_id} is locked or not pending"
            }
        )
    return FlowNodeResponse.from_flow_node(await _load_flow_node(manager, flow_node_id))
