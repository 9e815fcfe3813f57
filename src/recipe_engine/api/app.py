"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .routers import recipes, executions, schedules, events
from .middleware import RequestLoggingMiddleware, AuthenticationMiddleware
from .state import app_state, get_app_state
from ..config import EngineSettings
from ..exceptions import RecipeEngineError
from ..services import build_services


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting Recipe Engine API...")

    services = await build_services(EngineSettings.from_env())
    app_state["services"] = services

    logger.info("Recipe Engine API started successfully")

    yield

    logger.info("Shutting down Recipe Engine API...")
    await services.close()
    app_state.clear()
    logger.info("Recipe Engine API shut down successfully")


app = FastAPI(
    title="Recipe Workflow Engine API",
    description="配方调度与执行引擎 RESTful API",
    version="0.1.0",
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
# 最后添加的最先执行，请求日志包住认证
app.add_middleware(RequestLoggingMiddleware)

app.include_router(recipes.router, prefix="/api/v1/recipes", tags=["recipes"])
app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
app.include_router(schedules.router, prefix="/api/v1/schedules", tags=["schedules"])
app.include_router(events.router, prefix="/api/v1/events", tags=["events"])


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(RecipeEngineError)
async def engine_error_handler(request: Request, exc: RecipeEngineError):
    """领域异常 -> HTTP 状态码"""
    if exc.status_code >= 500:
        logger.error(f"Engine error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.kind,
            "message": exc.message,
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
        "name": "Recipe Workflow Engine API",
        "version": "0.1.0",
        "status": "running",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", tags=["root"])
async def health():
    """健康检查"""
    services = get_app_state().get("services")
    return {
        "status": "healthy" if services else "starting",
        "storage": "database" if services and services.db_manager else "memory",
    }
