"""
danmaku_relay.main
~~~~~~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、定义生命周期。

启动时读取配置（失败则进程退出）、初始化日志、创建 ``DanmakuRelay``
并启动定时重连；关闭时停止调度并释放所有上游连接。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from danmaku_relay.api import room, ws
from danmaku_relay.core.config import Settings, get_settings
from danmaku_relay.core.logging import get_logger, setup_logging
from danmaku_relay.schemas.api_response import ApiResponse
from danmaku_relay.services.relay import DanmakuRelay

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, relay: DanmakuRelay | None = None) -> FastAPI:
    """创建 FastAPI 实例。测试时可注入配置和编排者。"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
        # ── 启动 ──
        setup_logging(settings)
        app.state.settings = settings
        app.state.relay = relay or DanmakuRelay.from_settings(settings)
        if settings.BILIBILI_PROTOCOL == "ws" and "BILIBILI_PROTOCOL" not in settings.model_fields_set:
            logger.info("未指定 Bilibili 弹幕协议，默认使用 ws")
        app.state.relay.start()
        logger.info(
            "Bilibili Danmaku Source Server is listening at %s:%s | protocol=%s | auth=%s",
            settings.HOST,
            settings.PORT,
            settings.BILIBILI_PROTOCOL,
            settings.auth_enabled,
        )
        yield
        # ── 关闭 ──
        await app.state.relay.shutdown()
        logger.info("弹幕源服务已关闭")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Bilibili 直播弹幕源服务",
        version=settings.VERSION,
        debug=settings.is_dev,
        lifespan=lifespan,
    )
    app.include_router(room.router, prefix="/api", tags=["Rooms"])
    app.include_router(ws.router, tags=["Subscriber"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
        logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
        detail = str(exc) if not settings.is_prod else "服务器内部错误"
        return JSONResponse(
            status_code=500,
            content=ApiResponse.fail(msg=detail).model_dump(),
        )

    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> JSONResponse:
        """验证服务是否正常运行。"""
        current: DanmakuRelay = request.app.state.relay
        return JSONResponse(
            content={
                "status": "ok",
                "environment": settings.ENVIRONMENT,
                "protocol": settings.BILIBILI_PROTOCOL,
                "rooms": len(current.pool),
                "reconnect_cron": settings.RECONNECT_CRON,
            },
        )

    return app


def run() -> None:
    """命令行入口。"""
    import uvicorn

    # 配置缺失或格式错误时这里会直接抛出 ValidationError
    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.effective_log_level.lower(),
    )


if __name__ == "__main__":
    run()
