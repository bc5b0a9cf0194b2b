"""
流程引擎异常定义
"""
from typing import Optional


class BpmnEngineError(Exception):
    """流程引擎基础异常"""
    pass


class StructuralError(BpmnEngineError):
    """结构/前置条件错误，直接抛给调用方"""
    pass


class FlowchartParseError(StructuralError):
    """流程图解析异常"""
    pass


class FlowchartValidationError(StructuralError):
    """流程图验证异常"""
    pass


class UnknownElementTypeError(StructuralError):
    """未注册的元素类型"""
    def __init__(self, element_type: str):
        self.element_type = element_type
        super().__init__(f"No implementation registered for element type '{element_type}'")


class ElementNotFoundError(StructuralError):
    """流程图中不存在的元素"""
    def __init__(self, element_id: str, flowchart_id: Optional[str] = None):
        self.element_id = element_id
        self.flowchart_id = flowchart_id
        msg = f"Element '{element_id}' not found"
        if flowchart_id:
            msg += f" in flowchart '{flowchart_id}'"
        super().__init__(msg)


class TargetMismatchError(StructuralError):
    """目标对象不匹配"""
    pass


class ProcessAlreadyStartedError(StructuralError):
    """同一目标已存在运行中的流程"""
    def __init__(self, flowchart_id: str, target_type: str, target_id: str):
        self.flowchart_id = flowchart_id
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(
            f"Process for flowchart '{flowchart_id}' and target {target_type} "
            f"'{target_id}' is already started"
        )


class ProcessNotActiveError(StructuralError):
    """流程不处于活动状态"""
    def __init__(self, process_id: str, status: str, message: Optional[str] = None):
        self.process_id = process_id
        self.status = status
        msg = f"Process '{process_id}' is not active (status '{status}')"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class FlowNotActualError(StructuralError):
    """流程节点已失效"""
    def __init__(self, flow_node_id: str, message: str):
        self.flow_node_id = flow_node_id
        super().__init__(f"Flow node '{flow_node_id}': {message}")


class StateTransitionError(BpmnEngineError):
    """状态转换异常"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class FlowNodeLockError(BpmnEngineError):
    """流程节点加锁异常"""
    def __init__(self, flow_node_id: str, message: str):
        self.flow_node_id = flow_node_id
        super().__init__(f"Flow node '{flow_node_id}': {message}")


class FlowNodeLockedError(FlowNodeLockError):
    """流程节点已被锁定"""
    def __init__(self, flow_node_id: str):
        super().__init__(flow_node_id, "already locked")


class FlowNodeNotFoundError(FlowNodeLockError):
    """流程节点不存在"""
    def __init__(self, flow_node_id: str):
        super().__init__(flow_node_id, "not found")


class SchedulingError(BpmnEngineError):
    """调度异常"""
    pass


class ProcessError(BpmnEngineError):
    """业务错误，由错误传播器作为数据处理"""
    def __init__(self, code: Optional[str] = None, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(message or f"Process error '{code}'")
