# main.py
# Description: FastAPI application for the putil server: offline record sync, trigger notifications and
#   account settings.
#
# Imports
import logging
import sys
from contextlib import asynccontextmanager
#
# 3rd-party Libraries
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
#
# Local Imports
from putil_Server_API.app.api.v1.API_Deps.DB_Deps import (
    get_records_db,
    get_trigger_scanner,
    shutdown_dependencies,
)
#
# Account Endpoint
from putil_Server_API.app.api.v1.endpoints.account import router as account_router
#
# Notifications Endpoint
from putil_Server_API.app.api.v1.endpoints.notifications import router as notifications_router
#
# Sync Endpoint
from putil_Server_API.app.api.v1.endpoints.sync import router as sync_router
from putil_Server_API.app.core.config import settings
#
########################################################################################################################
#
# Functions:


# --- Loguru Configuration with Intercept Handler ---

# Define a handler class to intercept standard logging messages
class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )

# Remove default handler
logger.remove()

logger.add(
    sys.stderr,
    level=settings["LOG_LEVEL"],
    format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    colorize=True,
)

# Configure standard logging to use the InterceptHandler
loggers_to_intercept = ["uvicorn", "uvicorn.error", "uvicorn.access"]
for logger_name in loggers_to_intercept:
    mod_logger = logging.getLogger(logger_name)
    mod_logger.handlers = [InterceptHandler()]
    mod_logger.propagate = False # Prevent messages from reaching the root logger

logger.info(f"Loguru logger configured (level={settings['LOG_LEVEL']}) with uvicorn logging interception.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: open the store (creating the schema) before the first request, then start the scanner.
    get_records_db()
    if settings["SCANNER_ENABLED"]:
        await get_trigger_scanner().start()
    else:
        logger.info("Trigger scanner disabled by configuration.")
    yield
    # Shutdown code
    logger.info("App Shutdown: stopping scanner and closing notification channel")
    await shutdown_dependencies()


app = FastAPI(
    title="putil API",
    version="0.1.0",
    description="Offline-first sync for tasks, transactions and calendar events, with reminder and "
                "deadline notifications.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings["CORS_ORIGINS"] or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "Welcome to the putil API; If you're seeing this, the server is running!"}


@app.get("/health")
async def health():
    return {"status": "ok"}


# Router for record sync endpoints
app.include_router(sync_router, prefix="/api/v1/sync", tags=["sync"])


# Router for trigger notifications
app.include_router(notifications_router, prefix="/api/v1/notifications", tags=["notifications"])


# Router for account settings
app.include_router(account_router, prefix="/api/v1/account", tags=["account"])

#
# End of main.py
########################################################################################################################
