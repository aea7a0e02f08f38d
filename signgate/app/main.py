import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from signgate.app.api.routes import router as signing_router
from signgate.app.api.routes import signing_error_handler
from signgate.app.core.config import Settings, get_settings
from signgate.app.core.errors import SigningError
from signgate.app.services.backend_client import SigningBackendClient
from signgate.app.services.session_store import InMemorySessionStore
from signgate.app.services.signing_service import SigningService

logger = logging.getLogger("signgate.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the distribution is not installed.
    """
    try:
        return version("web3-signing-gateway")
    except PackageNotFoundError:
        return "0.1.0"


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Persistent HTTP client for the signing backend."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=settings.request_timeout_seconds,
            connect=10.0,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
        ),
        headers={
            "User-Agent": f"signgate/{get_app_version()}",
        },
    )


def build_signing_service(
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> SigningService:
    """
    Composition root: wires the backend client and the session store into
    the signing service. Nothing else constructs these collaborators.
    """
    return SigningService(
        backend=SigningBackendClient(http_client, settings),
        store=InMemorySessionStore(),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - One shared HTTP client per process
    - Missing backend settings are reported, not fatal
    """
    logger.info(
        "signing_gateway_startup_begin",
        extra={
            "service": "signgate",
            "version": get_app_version(),
        },
    )

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    settings: Optional[Settings] = getattr(app.state, "settings", None)
    if settings is None:
        try:
            settings = get_settings()
        except Exception:
            logger.exception("invalid_gateway_configuration")
            raise
        app.state.settings = settings

    if not settings.backend_configured:
        logger.warning(
            "signing_backend_not_configured",
            extra={"hint": "set GATEWAY_BACKEND_BASE_URL and GATEWAY_BACKEND_API_KEY"},
        )

    if settings.enable_deterministic_wallets:
        logger.warning("deterministic_wallets_enabled")

    # ------------------------------------------------------------------
    # Persistent HTTP client (injected clients are owned by the caller)
    # ------------------------------------------------------------------
    injected_client: Optional[httpx.AsyncClient] = getattr(
        app.state, "http_client", None
    )
    http_client = injected_client or build_http_client(settings)
    app.state.http_client = http_client

    app.state.signing_service = build_signing_service(settings, http_client)

    try:
        yield
    finally:
        logger.info("signing_gateway_shutdown_begin")

        if injected_client is None:
            try:
                await http_client.aclose()
            except Exception:
                logger.warning("http_client_shutdown_failed")


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory for the Web3 signing gateway.
    """
    app = FastAPI(
        title="Web3 Signing Gateway",
        description=(
            "Document signing sessions bound to EIP-712 wallet signatures, "
            "delegated to an external signing backend."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    if settings is not None:
        app.state.settings = settings
    if http_client is not None:
        app.state.http_client = http_client

    cors_origins = (settings or get_settings()).cors_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=[
            "Content-Disposition",
            "X-Correlation-ID",
            "X-Session-ID",
            "X-Signer-Address",
            "X-Verification-Link",
        ],
    )

    app.add_exception_handler(SigningError, signing_error_handler)
    app.include_router(signing_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and correctly initialized.

        NOTE:
        - Does NOT call the signing backend
        """
        current: Optional[Settings] = getattr(app.state, "settings", None)
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "signgate",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "backend_configured": bool(
                    current is not None and current.backend_configured
                ),
                "wallet_client_configured": bool(
                    current is not None and current.wallet_client_id
                ),
            }
        )

    return app


app = create_app()


def run() -> None:
    """Console entry point: ``signgate``."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run("signgate.app.main:app", host="0.0.0.0", port=8000)
