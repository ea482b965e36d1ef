import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from propositions_backend.config import CORS_ORIGINS, LOG_LEVEL
from propositions_backend.db_session import async_engine, create_tables
from propositions_backend.middleware import configure_security
from propositions_backend.storage_api import router as storage_router

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("propositions_backend")


# db
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("[STARTUP] Ensuring storage tables exist...")
    try:
        await create_tables()
        logger.info("[STARTUP] Storage tables ready.")
    except Exception:
        logger.exception("[STARTUP] Failed to prepare database during startup")
        raise
    yield
    logger.info("[SHUTDOWN] Disposing database engine...")
    await async_engine.dispose()


# fastapi app
propositions_app = FastAPI(lifespan=lifespan)

# Configure CORS
propositions_app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods (GET, POST, etc.)
    allow_headers=["*"],  # Allow all headers
)

configure_security(propositions_app)

# Include routers
propositions_app.include_router(storage_router)


@propositions_app.get("/health")
async def health():
    return {"status": "ok"}
