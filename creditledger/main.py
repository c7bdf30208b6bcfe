import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from the working directory unless running under pytest
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from creditledger.core.config import settings, validate_config
from creditledger.core.database import create_all_tables
from creditledger.core.logging import configure_logging
from creditledger.core.middleware.request_id import RequestIdMiddleware
from creditledger.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from creditledger.api import admin_ledger, catalog, coupons, credits, health, purchases

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("creditledger")
    logger.info("Starting credit ledger service...")
    if settings.AUTO_CREATE_TABLES:
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("creditledger").info("Stopping credit ledger service...")


app = FastAPI(title="Credit Ledger", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(credits.router)
app.include_router(purchases.router)
app.include_router(coupons.router)
app.include_router(catalog.router)
app.include_router(admin_ledger.router)
app.include_router(health.router)
app.include_router(health.root_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("creditledger.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
