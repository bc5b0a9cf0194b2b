"""
信号 API 路由
"""
from fastapi import APIRouter, Depends
import logging

from ..models import SignalRequest, SignalResponse
from ..dependencies import get_manager


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/broadcast", response_model=SignalResponse)
async def broadcast_signal(
    request: SignalRequest,
    manager = Depends(get_manager)
) -> SignalResponse:
    """立即把信号投递给所有监听节点"""
    count = await manager.scanner.broadcast_signal(request.name)
    return SignalResponse(name=request.name, count=count)


@router.post("/trigger", response_model=SignalResponse)
async def trigger_signal(
    request: SignalRequest,
    manager = Depends(get_manager)
) -> SignalResponse:
    """标记监听为已触发，由下一次调度投递"""
    count = await manager.scanner.trigger_signal(request.name)
    return SignalResponse(name=request.name, count=count)
