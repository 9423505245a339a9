"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.routes import payment_intents as payment_intents_routes
from api.routes import payment_methods as payment_methods_routes
from api.routes import payments as payments_routes
from api.routes import refunds as refunds_routes
from api.routes import webhooks as webhooks_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import error_response, success_response
from core.logging_config import get_logger, configure_logging
from shared.codes import BusinessCode
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.events.inmemory import InMemoryEventPublisher
from infrastructure.external.payments import build_payment_gateways, close_payment_gateways


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    engine = build_engine()
    app.state.engine = engine

    # 启动时创建数据库表（仅开发环境或显式开启）。生产应使用 Alembic 迁移
    if settings.DEBUG or settings.database.create_tables_on_startup:
        await create_tables(engine)
        logger.info("database_initialized", message="Database tables created")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    # 测试可预先注入以下依赖，这里只补齐缺失项
    if getattr(app.state, "session_factory", None) is None:
        app.state.session_factory = build_session_factory(engine)
    if getattr(app.state, "payment_gateways", None) is None:
        app.state.payment_gateways = build_payment_gateways()
    if getattr(app.state, "event_publisher", None) is None:
        app.state.event_publisher = InMemoryEventPublisher(keep_history=False)

    logger.info(
        "payment_gateways_initialized",
        providers=sorted(app.state.payment_gateways),
    )

    yield

    await close_payment_gateways(app.state.payment_gateways)
    await engine.dispose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="支付即服务：支付意图、交易台账、退款与处理方 Webhook 对账",
)

# 添加中间件（注意顺序：后添加的在外层，先执行）
# 1. 日志中间件（依赖 RequestIDMiddleware 绑定的上下文）
app.add_middleware(LoggingMiddleware)

# 2. Request ID中间件（在日志中间件之前执行）
app.add_middleware(RequestIDMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(payment_intents_routes.router, prefix="/api/v1")
app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(refunds_routes.router, prefix="/api/v1")
app.include_router(payment_methods_routes.router, prefix="/api/v1")
app.include_router(webhooks_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message="Payment service is running"
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """健康检查端点：探测数据库连通性"""
    session_factory = getattr(request.app.state, "session_factory", None)
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError, TypeError) as exc:
        logger.error("health_check_failed", error=str(exc))
        response = error_response(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message="Database unavailable",
            error_type="SERVICE_UNAVAILABLE",
        )
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))
    return success_response(
        data={"status": "healthy", "providers": sorted(getattr(request.app.state, "payment_gateways", {}) or {})},
        message="OK",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
