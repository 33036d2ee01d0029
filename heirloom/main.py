import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from heirloom/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from heirloom.core.config import settings, validate_config  # noqa: E402
from heirloom.core.logging import configure_logging  # noqa: E402
from heirloom.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from heirloom.core.database import create_all_tables  # noqa: E402
from heirloom.core.errors import (  # noqa: E402
    AppError,
    DowngradeBlockedError,
    app_error_handler,
    downgrade_blocked_handler,
    http_error_handler,
    integrity_error_handler,
    provider_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from heirloom.features.billing.provider import BillingProviderError  # noqa: E402
from heirloom.features.quotas.service import seed_quotas  # noqa: E402
from heirloom.api import admin_limits, health, subscription  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("heirloom")
    logger.info("Starting Heirloom subscription core...")
    create_all_tables()
    seeded = seed_quotas()
    logger.info(f"Quota table ready ({seeded} entries written)")
    try:
        yield
    finally:
        logging.getLogger("heirloom").info("Stopping Heirloom subscription core...")


app = FastAPI(title="Heirloom - Subscription Core", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

# Specific handlers first; Starlette resolves by exception MRO
app.add_exception_handler(DowngradeBlockedError, downgrade_blocked_handler)
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(BillingProviderError, provider_error_handler)
app.add_exception_handler(IntegrityError, integrity_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscription.router, prefix="/api", tags=["subscription"])
app.include_router(admin_limits.router, prefix="/api", tags=["admin"])
app.include_router(health.root_router, tags=["health"])
