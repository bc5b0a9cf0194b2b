"""
流程图管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
import logging

from ..models import (
    FlowchartCreateRequest, FlowchartResponse, FlowchartDetailResponse,
    PaginatedResponse, SuccessResponse
)
from ..dependencies import get_parser, get_storage, get_current_user


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=FlowchartResponse, status_code=status.HTTP_201_CREATED)
async def create_flowchart(
    request: FlowchartCreateRequest,
    parser = Depends(get_parser),
    storage = Depends(get_storage),
    current_user = Depends(get_current_user)
) -> FlowchartResponse:
    """创建或替换流程图"""
    definition = {
        "name": request.name,
        "targetType": request.target_type,
        "list": request.list
    }
    if request.id:
        definition["id"] = request.id

    # 解析错误由应用级异常处理器转换为 400
    flowchart = parser.parse(definition)
    flowchart.is_active = request.is_active
    await storage.flowcharts.save(flowchart)

    logger.info(f"Flowchart {flowchart.id} saved by {current_user['id']}")
    return FlowchartResponse.from_flowchart(flowchart)


@router.get("/", response_model=PaginatedResponse)
async def list_flowcharts(
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    storage = Depends(get_storage)
) -> PaginatedResponse:
    """列出流程图"""
    flowcharts = await storage.flowcharts.list(offset=offset, limit=limit)
    items = [FlowchartResponse.from_flowchart(f) for f in flowcharts]
    return PaginatedResponse(total=len(items), offset=offset, limit=limit, items=items)


@router.get("/{flowchart_id}", response_model=FlowchartDetailResponse)
async def get_flowchart(
    flowchart_id: str,
    storage = Depends(get_storage)
) -> FlowchartDetailResponse:
    """获取流程图详情"""
    flowchart = await storage.flowcharts.get(flowchart_id)
    if not flowchart:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Flowchart {flowchart_id} not found"
            }
        )
    return FlowchartDetailResponse.from_flowchart(flowchart)


@router.delete("/{flowchart_id}", response_model=SuccessResponse)
async def delete_flowchart(
    flowchart_id: str,
    storage = Depends(get_storage),
    current_user = Depends(get_current_user)
) -> SuccessResponse:
    """删除流程图"""
    if not await storage.flowcharts.delete(flowchart_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Flowchart {flowchart_id} not found"
            }
        )
    logger.info(f"Flowchart {flowchart_id} deleted by {current_user['id']}")
    return SuccessResponse(message=f"Flowchart {flowchart_id} deleted")
