from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atendente.config import settings
from atendente.logging_config import get_logger, setup_logging
from atendente.routers import webhook

setup_logging(settings.log_level, settings.log_format)
logger = get_logger("main")

app = FastAPI(
    title="Atendente API",
    description="Inbound WhatsApp pipeline for the multi-tenant sales and scheduling agent",
    version="0.1.0",
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)


@app.on_event("startup")
async def log_startup():
    logger.info("Atendente API started", extra={"context": {"cors_origins": settings.cors_origins}})


@app.get("/health")
async def health():
    return {"status": "ok"}
