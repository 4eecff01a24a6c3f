import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, load_settings
from .database import Base, build_engine, build_session_factory
from .dependencies import AppContext
from .errors import ConfigurationError, register_exception_handlers
from .oss import OssObjectStorage
from .payment import PAYMENT_RESPONSE_HEADER, FacilitatorClient, PaymentGate, RouteTerms
from .storage import ImageStore, ObjectStorage

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    objects: Optional[ObjectStorage] = None,
    facilitator: Optional[FacilitatorClient] = None,
    engine: Optional[Engine] = None,
) -> FastAPI:
    """构建应用；客户端在这里创建一次，测试可传入替身。"""
    settings = settings or load_settings()

    engine = engine or build_engine(settings.database_uri)
    session_factory = build_session_factory(engine)
    objects = objects or OssObjectStorage.from_settings(settings)
    facilitator = facilitator or FacilitatorClient(settings.FACILITATOR_URL, timeout=settings.FACILITATOR_TIMEOUT)

    gate = PaymentGate(
        pay_to=settings.ADDRESS,
        network=settings.NETWORK,
        routes={
            "POST /upload": RouteTerms(price=settings.UPLOAD_PRICE, description="Upload image to storage"),
        },
        facilitator=facilitator,
    )

    app = FastAPI(title="x402 Image Uploader", version="0.1.0")
    app.state.context = AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=ImageStore(objects, session_factory),
        facilitator=facilitator,
    )

    # 路由
    from .routers import health, images  # 延迟导入以避免循环

    app.include_router(health.router, tags=["health"])
    app.include_router(images.router, tags=["images"])

    register_exception_handlers(app)

    # 后添加的中间件在外层：CORS 先于支付网关处理
    app.middleware("http")(gate)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[PAYMENT_RESPONSE_HEADER],
    )

    @app.on_event("startup")
    def on_startup() -> None:
        # 初始化数据库表；数据库不可用时照常启动，/health 不受影响
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as e:
            logger.error("Database unavailable at startup, tables not created: %s", e)

    return app


def run() -> None:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Missing required configuration: %s (FACILITATOR_URL and ADDRESS must be set)", ", ".join(e.fields))
        raise

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings)

    logger.info("x402 Image Uploader Service running on port %s", settings.PORT)
    logger.info("Accepting payments to: %s", settings.ADDRESS)
    logger.info("Network: %s", settings.NETWORK)
    logger.info("Facilitator: %s", settings.FACILITATOR_URL)
    logger.info("Endpoints: GET /health, POST /upload (protected), GET /images")
    logger.info("Payment required: %s per upload", settings.UPLOAD_PRICE)

    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
