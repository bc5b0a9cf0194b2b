"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .routers import flowcharts, processes, flow_nodes, signals, scheduler, targets, monitoring
from .middleware import RequestLoggingMiddleware, AuthenticationMiddleware
from .dependencies import app_state, get_app_state
from .. import __version__
from ..config import EngineConfig
from ..core import ProcessManager, ParallelCoordinator, FlowchartParser
from ..storage.repository import Storage
from ..storage.sqlalchemy_repository import DatabaseManager, create_sqlalchemy_storage
from ..integrations import EventBus, AsyncioJobScheduler, InMemoryTargetResolver
from ..exceptions import (
    BpmnEngineError, StructuralError, ElementNotFoundError, ProcessAlreadyStartedError,
    ProcessNotActiveError, FlowNotActualError, FlowNodeLockError, StateTransitionError
)


logger = logging.getLogger(__name__)


API_VERSION = __version__

# 使用内存存储的数据库地址
MEMORY_DATABASE_URL = "memory"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting BPMN Engine API...")

    config = EngineConfig.from_env()

    db_manager = None
    if config.database_url == MEMORY_DATABASE_URL:
        storage = Storage.in_memory()
    else:
        db_manager = DatabaseManager(config.database_url)
        await db_manager.initialize()
        storage = create_sqlalchemy_storage(db_manager)

    event_bus = EventBus()
    target_resolver = InMemoryTargetResolver()
    manager = ProcessManager(
        storage=storage,
        config=config,
        event_bus=event_bus,
        target_resolver=target_resolver
    )
    job_scheduler = AsyncioJobScheduler(config.max_concurrent_jobs)
    coordinator = ParallelCoordinator(manager, job_scheduler)

    app_state.update({
        "config": config,
        "db_manager": db_manager,
        "storage": storage,
        "manager": manager,
        "coordinator": coordinator,
        "job_scheduler": job_scheduler,
        "parser": FlowchartParser(),
        "event_bus": event_bus,
        "target_resolver": target_resolver
    })

    logger.info("BPMN Engine API started successfully")

    yield

    logger.info("Shutting down BPMN Engine API...")

    await job_scheduler.shutdown()
    if db_manager:
        await db_manager.close()
    app_state.clear()

    logger.info("BPMN Engine API shut down successfully")


app = FastAPI(
    title="BPMN Process Engine API",
    description="BPMN 流程执行引擎 RESTful API",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(AuthenticationMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(flowcharts.router, prefix="/api/v1/flowcharts", tags=["flowcharts"])
app.include_router(processes.router, prefix="/api/v1/processes", tags=["processes"])
app.include_router(flow_nodes.router, prefix="/api/v1/flow-nodes", tags=["flow-nodes"])
app.include_router(signals.router, prefix="/api/v1/signals", tags=["signals"])
app.include_router(scheduler.router, prefix="/api/v1/scheduler", tags=["scheduler"])
app.include_router(targets.router, prefix="/api/v1/targets", tags=["targets"])
app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


def _error_status(exc: BpmnEngineError) -> int:
    if isinstance(exc, ElementNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (
        ProcessAlreadyStartedError, ProcessNotActiveError, FlowNotActualError,
        FlowNodeLockError, StateTransitionError
    )):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, StructuralError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(BpmnEngineError)
async def engine_exception_handler(request: Request, exc: BpmnEngineError):
    """引擎异常映射为 HTTP 状态码"""
    status_code = _error_status(exc)
    if status_code >= 500:
        logger.error(f"Engine error: {exc}", exc_info=True)
    else:
        logger.info(f"Request rejected: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": str(exc),
            "request_id": _request_id(request)
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """全局异常处理器"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": _request_id(request)
        }
    )


@app.get("/", tags=["root"])
async def root():
    """API根路径"""
    return {
        "name": "BPMN Process Engine API",
        "version": API_VERSION,
        "status": "running",
        "docs": "/docs",
        "health": "/api/v1/monitoring/health"
    }


__all__ = ["app", "get_app_state"]
