"""
业务对象 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, status
import logging

from ..models import TargetRequest, TargetResponse
from ..dependencies import get_manager
from ...models.process import Target


logger = logging.getLogger(__name__)
router = APIRouter()


@router.put("/{target_type}/{target_id}", response_model=TargetResponse)
async def upsert_target(
    target_type: str,
    target_id: str,
    request: TargetRequest,
    manager = Depends(get_manager)
) -> TargetResponse:
    """创建或更新业务对象的属性"""
    resolver = manager.target_resolver
    target = await resolver.get_entity(target_type, target_id)
    if target is None:
        target = Target(type=target_type, id=target_id)
    await resolver.update_entity(target, request.attributes)

    stored = await resolver.get_entity(target_type, target_id)
    return TargetResponse(type=stored.type, id=stored.id, attributes=stored.attributes)


@router.get("/{target_type}/{target_id}", response_model=TargetResponse)
async def get_target(
    target_type: str,
    target_id: str,
    manager = Depends(get_manager)
) -> TargetResponse:
    """获取业务对象"""
    target = await manager.target_resolver.get_entity(target_type, target_id)
    if not target:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Target {target_type} '{target_id}' not found"
            }
        )
    return TargetResponse(type=target.type, id=target.id, attributes=target.attributes)
