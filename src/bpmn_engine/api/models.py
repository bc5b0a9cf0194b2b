"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.flowchart import Flowchart
from ..models.process import Process, FlowNode


# 流程图

class FlowchartCreateRequest(BaseModel):
    """创建流程图请求"""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="流程图ID，缺省时自动生成")
    name: str = Field("", description="流程图名称")
    target_type: Optional[str] = Field(None, alias="targetType", description="目标对象类型")
    list: List[Dict[str, Any]] = Field(..., description="元素与连线列表")
    is_active: bool = Field(True, alias="isActive", description="是否激活")


class FlowchartResponse(BaseModel):
    """流程图响应"""
    id: str = Field(..., description="流程图ID")
    name: str = Field(..., description="流程图名称")
    target_type: Optional[str] = Field(None, description="目标对象类型")
    is_active: bool = Field(True, description="是否激活")
    element_count: int = Field(..., description="元素数量")
    event_start_ids: List[str] = Field(default_factory=list, description="普通开始事件ID")

    @classmethod
    def from_flowchart(cls, flowchart: Flowchart) -> "FlowchartResponse":
        return cls(
            id=flowchart.id,
            name=flowchart.name,
            target_type=flowchart.target_type,
            is_active=flowchart.is_active,
            element_count=len(flowchart.elements),
            event_start_ids=list(flowchart.event_start_ids)
        )


class FlowchartDetailResponse(FlowchartResponse):
    """流程图详情响应"""
    list: List[Dict[str, Any]] = Field(default_factory=list, description="元素与连线列表")

    @classmethod
    def from_flowchart(cls, flowchart: Flowchart) -> "FlowchartDetailResponse":
        base = FlowchartResponse.from_flowchart(flowchart)
        return cls(**base.model_dump(), list=flowchart.data_list)


# 流程

class TargetRequest(BaseModel):
    """目标对象属性"""
    attributes: Dict[str, Any] = Field(default_factory=dict, description="属性")


class TargetResponse(BaseModel):
    """目标对象响应"""
    type: str = Field(..., description="类型")
    id: str = Field(..., description="ID")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="属性")


class ProcessStartRequest(BaseModel):
    """启动流程请求"""
    flowchart_id: str = Field(..., description="流程图ID")
    target_type: str = Field(..., description="目标对象类型")
    target_id: str = Field(..., description="目标对象ID")
    start_element_id: Optional[str] = Field(None, description="显式起始元素ID")
    variables: Dict[str, Any] = Field(default_factory=dict, description="初始变量")
    signal_params: Optional[Dict[str, Any]] = Field(None, description="信号参数")


class ProcessResponse(BaseModel):
    """流程响应"""
    id: str = Field(..., description="流程ID")
    flowchart_id: Optional[str] = Field(None, description="流程图ID")
    name: str = Field("", description="名称")
    status: str = Field(..., description="状态")
    target_type: Optional[str] = Field(None, description="目标对象类型")
    target_id: Optional[str] = Field(None, description="目标对象ID")
    parent_process_id: Optional[str] = Field(None, description="父流程ID")
    parent_process_flow_node_id: Optional[str] = Field(None, description="父流程中的节点ID")
    root_process_id: Optional[str] = Field(None, description="根流程ID")
    variables: Dict[str, Any] = Field(default_factory=dict, description="变量")
    created_entities_data: Dict[str, Any] = Field(default_factory=dict, description="已创建对象")
    created_at: datetime = Field(..., description="创建时间")
    ended_at: Optional[datetime] = Field(None, description="结束时间")

    @classmethod
    def from_process(cls, process: Process) -> "ProcessResponse":
        return cls(
            id=process.id,
            flowchart_id=process.flowchart_id,
            name=process.name,
            status=process.status.value,
            target_type=process.target_type,
            target_id=process.target_id,
            parent_process_id=process.parent_process_id,
            parent_process_flow_node_id=process.parent_process_flow_node_id,
            root_process_id=process.root_process_id,
            variables=process.variables,
            created_entities_data=process.created_entities_data,
            created_at=process.created_at,
            ended_at=process.ended_at
        )


class FlowNodeResponse(BaseModel):
    """流程节点响应"""
    id: str = Field(..., description="节点ID")
    process_id: Optional[str] = Field(None, description="流程ID")
    element_id: Optional[str] = Field(None, description="元素ID")
    element_type: Optional[str] = Field(None, description="元素类型")
    status: str = Field(..., description="状态")
    previous_flow_node_id: Optional[str] = Field(None, description="前一节点ID")
    divergent_flow_node_id: Optional[str] = Field(None, description="分叉节点ID")
    number: int = Field(0, description="序号")
    data: Dict[str, Any] = Field(default_factory=dict, description="节点数据")
    proceed_at: Optional[datetime] = Field(None, description="计划恢复时间")
    created_at: datetime = Field(..., description="创建时间")
    processed_at: Optional[datetime] = Field(None, description="处理完成时间")

    @classmethod
    def from_flow_node(cls, flow_node: FlowNode) -> "FlowNodeResponse":
        return cls(
            id=flow_node.id,
            process_id=flow_node.process_id,
            element_id=flow_node.element_id,
            element_type=flow_node.element_type.value if flow_node.element_type else None,
            status=flow_node.status.value,
            previous_flow_node_id=flow_node.previous_flow_node_id,
            divergent_flow_node_id=flow_node.divergent_flow_node_id,
            number=flow_node.number,
            data=flow_node.data.to_dict(),
            proceed_at=flow_node.proceed_at,
            created_at=flow_node.created_at,
            processed_at=flow_node.processed_at
        )


class CompensateRequest(BaseModel):
    """补偿请求"""
    activity_id: Optional[str] = Field(None, description="只补偿指定活动")


class EscalateRequest(BaseModel):
    """升级请求"""
    code: Optional[str] = Field(None, description="升级代码")


# 信号与调度

class SignalRequest(BaseModel):
    """信号请求"""
    name: str = Field(..., description="信号名称")


class SignalResponse(BaseModel):
    """信号响应"""
    name: str = Field(..., description="信号名称")
    count: int = Field(..., description="投递或标记的监听数")


class ProcessPendingRequest(BaseModel):
    """扫描等待节点请求"""
    root_process_id: Optional[str] = Field(None, description="只扫描该根流程下的节点")


class SchedulerResponse(BaseModel):
    """调度响应"""
    count: int = Field(..., description="处理数量")
    process_ids: List[str] = Field(default_factory=list, description="已调度的根流程ID")


# 通用模型

class ErrorResponse(BaseModel):
    """错误响应"""
    error: str = Field(..., description="错误类型")
    message: str = Field(..., description="错误信息")
    details: Optional[Dict[str, Any]] = Field(None, description="错误详情")
    request_id: Optional[str] = Field(None, description="请求ID")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="时间戳")


class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = Field(True, description="是否成功")
    message: str = Field(..., description="消息")
    data: Optional[Dict[str, Any]] = Field(None, description="额外数据")


class PaginatedResponse(BaseModel):
    """分页响应"""
    total: int = Field(..., description="总数")
    offset: int = Field(..., description="偏移量")
    limit: int = Field(..., description="每页数量")
    items: List[Any] = Field(..., description="数据项")


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="时间戳")
    checks: Dict[str, bool] = Field(default_factory=dict, description="各组件检查结果")
