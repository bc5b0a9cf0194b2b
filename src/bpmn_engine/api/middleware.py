"""
API 中间件
"""
import os
import time
import uuid
import logging
from typing import Callable, Optional
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import jwt


logger = logging.getLogger(__name__)


REQUEST_ID_HEADER = "X-Request-ID"

# 只读角色可以调用的方法
READ_ONLY_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _error_response(request: Request, status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "request_id": getattr(request.state, "request_id", None)
        }
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    请求日志中间件

    沿用调用方传入的 X-Request-ID，否则生成新的请求ID，并在响应头中返回。
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"[request_id={request_id}] [duration={duration:.3f}s]"
        )
        return response


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """
    JWT 认证中间件

    令牌中的 role 为 viewer 时只允许读取流程图与流程，不能启动、完成或停止流程。
    """

    PUBLIC_PATHS = frozenset({
        "/",
        "/docs",
        "/redoc",
        "/openapi.json",
        "/api/v1/monitoring/health"
    })

    def __init__(self, app, secret_key: Optional[str] = None, algorithm: str = "HS256"):
        super().__init__(app)
        self.secret_key = secret_key or os.getenv("JWT_SECRET_KEY", "change-me")
        self.algorithm = algorithm

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        # 开发模式
        if os.getenv("DISABLE_AUTH", "false").lower() == "true":
            request.state.user = {"id": "dev-user", "role": "admin"}
            return await call_next(request)

        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Bearer" or not token:
            return _error_response(
                request, status.HTTP_401_UNAUTHORIZED,
                "unauthorized", "Missing or invalid authorization header"
            )

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            return _error_response(request, status.HTTP_401_UNAUTHORIZED, "token_expired", "Token has expired")
        except jwt.InvalidTokenError:
            return _error_response(request, status.HTTP_401_UNAUTHORIZED, "invalid_token", "Invalid token")

        user = {"id": payload.get("sub"), "role": payload.get("role", "user")}
        if user["role"] == "viewer" and request.method not in READ_ONLY_METHODS:
            logger.info(f"Rejected {request.method} {request.url.path} for viewer {user['id']}")
            return _error_response(
                request, status.HTTP_403_FORBIDDEN,
                "forbidden", "Viewer tokens cannot modify processes"
            )

        request.state.user = user
        return await call_next(request)
