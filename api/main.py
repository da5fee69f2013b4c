import uvicorn
from typing import List
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from core.logging import get_api_logger_safe, configure_logging
from app.containers import AppContainer
from app.services import LifespanService
from api.middleware.request_ids import RequestIdMiddleware
from api.middleware.error_handling import ErrorHandlingMiddleware, register_exception_handlers
from api.routers import broker, deposits, pdt, trading
from api.schemas.responses import HealthResponse, HealthStatus

logger = get_api_logger_safe("api.main")

API_PREFIX = "/api"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    container = app.state.container
    settings = container.settings()
    logger.info("Starting Neural Core API server", active_brokers=settings.active_brokers,
                environment=settings.environment.value)

    services: List[LifespanService] = container.lifespan_services()
    try:
        await container.db_manager().init()
        for service in services:
            await service.start()
        logger.info("API services initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize API services", error=str(e))
        raise

    yield

    logger.info("Shutting down Neural Core API server")
    try:
        for service in reversed(services):
            await service.stop()
        await container.trading_engine().shutdown()
        await container.db_manager().shutdown()
        logger.info("API services stopped successfully")
    except Exception as e:
        logger.error("Error during API shutdown", error=str(e))


def _build_uvicorn_log_config() -> dict:
    """Return a minimal log config that leaves our structlog handlers in place.

    Uvicorn applies this dictConfig at startup; listing handlers here would
    replace the ones enhanced logging attached to the uvicorn loggers.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "loggers": {
            "uvicorn": {"level": "INFO", "propagate": False},
            "uvicorn.error": {"level": "INFO", "propagate": False},
            "uvicorn.access": {"level": "INFO", "propagate": False},
            "fastapi": {"level": "INFO", "propagate": False},
        },
    }


def create_app(container: AppContainer = None) -> FastAPI:
    """Creates and configures the FastAPI application"""
    container = container or AppContainer()
    settings = container.settings()

    app = FastAPI(
        title="Neural Core Trading API",
        version=settings.version,
        description="""
        # Neural Core Trading API

        Multi-broker autonomous trading coordinator.

        ## Features
        - **Broker engine**: start/stop brokers, reconciled portfolio state, trade history
        - **Trading limits**: per-broker user limits bounded by broker maximum and balance
        - **PDT compliance**: Pattern Day Trader status and protection controls
        - **Deposit protection**: capped deposits with atomic settlement

        Deposit routes identify the caller through the `X-User-Id` header.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container

    configure_logging(settings)

    container.wire(modules=[
        "api.dependencies",
        "api.routers.broker",
        "api.routers.deposits",
        "api.routers.pdt",
        "api.routers.trading",
    ])

    register_exception_handlers(app)

    # First added is innermost
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    cors_origins = settings.api.cors_origins
    if settings.environment == "production" and "*" in cors_origins:
        raise ValueError(
            "CORS wildcard (*) not allowed in production. "
            "Specify exact origins in API__CORS_ORIGINS environment variable."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.api.cors_credentials,
        allow_methods=settings.api.cors_methods,
        allow_headers=settings.api.cors_headers,
    )

    app.include_router(pdt.router, prefix=API_PREFIX)
    app.include_router(broker.router, prefix=API_PREFIX)
    app.include_router(trading.router, prefix=API_PREFIX)
    app.include_router(deposits.router, prefix=API_PREFIX)

    @app.get(f"{API_PREFIX}/health", tags=["Health"], response_model=HealthResponse)
    async def health_check():
        database_ok = await container.db_manager().verify_connection()
        snapshot = container.trading_engine().get_state()
        brokers = {
            broker_id: {"active": state.active, "connected": state.connected}
            for broker_id, state in snapshot.brokers.items()
        }
        degraded = any(b["active"] and not b["connected"] for b in brokers.values())
        if not database_ok:
            status = HealthStatus.UNHEALTHY
        elif degraded:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return HealthResponse(
            status=status,
            service="neural-core-api",
            version=settings.version,
            database=database_ok,
            brokers=brokers,
        )

    return app


def run(host: str = None, port: int = None):
    """Run the API server"""
    app = create_app()
    settings = app.state.container.settings()
    uvicorn.run(
        app,
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level="info",
        access_log=True,
        log_config=_build_uvicorn_log_config(),
        reload=False,
    )


if __name__ == "__main__":
    run()
