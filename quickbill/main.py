import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quickbill.core.config import settings, validate_config
from quickbill.core.database import create_all_tables
from quickbill.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from quickbill.core.logging import configure_logging
from quickbill.core.middleware.request_id import RequestIdMiddleware
from quickbill.api import billing, entitlements, health, invoices

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quickbill")
    logger.info("Starting QuickBill entitlement service...")
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping QuickBill entitlement service...")


app = FastAPI(title="QuickBill - Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# The app UI runs locally; adjust origins for hosted setups
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(entitlements.router, prefix="/api")
app.include_router(invoices.router, prefix="/api")
app.include_router(billing.router, prefix="/api")
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("quickbill.main:app", host="127.0.0.1", port=8000, reload=settings.ENV == "development")
