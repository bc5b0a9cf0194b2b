"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, status, Request
from typing import Dict, Any
import logging

from ..core import ProcessManager, ParallelCoordinator, FlowchartParser
from ..storage.repository import Storage


logger = logging.getLogger(__name__)


# 全局实例，由应用生命周期填充
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state


def _get_component(name: str, label: str) -> Any:
    component = get_app_state().get(name)
    if not component:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": f"{label} not initialized"
            }
        )
    return component


def get_manager() -> ProcessManager:
    """获取流程管理器实例"""
    return _get_component("manager", "Process manager")


def get_coordinator() -> ParallelCoordinator:
    """获取并行调度协调器实例"""
    return _get_component("coordinator", "Parallel coordinator")


def get_parser() -> FlowchartParser:
    return _get_component("parser", "Flowchart parser")


def get_storage() -> Storage:
    return _get_component("storage", "Storage")


def get_current_user(request: Request) -> Dict[str, Any]:
    """当前用户，由认证中间件写入 request.state"""
    return getattr(request.state, "user", None) or {"id": "anonymous", "role": "viewer"}
