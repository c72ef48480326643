from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

import app.models  # noqa: F401  register SQLModel tables

from app.config import get_settings
from app.db import create_db_and_tables
from app.routers import audit, backup, health, maintenance, records
from app.services.backup import BackupService
from app.services.encryption import FieldEncryptionEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_db_and_tables()

    # Fatal without ENCRYPT_KEY_SECRET: every sensitive read/write depends on it
    field_encryption = FieldEncryptionEngine.from_settings(settings)
    app.state.field_encryption = field_encryption

    backup_service = BackupService(settings, field_encryption)
    app.state.backup_service = backup_service

    # Daily automatic backup check (first run shortly after startup)
    async def _auto_backup_loop() -> None:
        from app.db import engine as db_engine

        await asyncio.sleep(5)
        while True:
            try:
                with Session(db_engine) as session:
                    backup_service.check_and_trigger_auto_backup(session)
            except Exception:
                logger.exception("Automatic backup check failed")
            await asyncio.sleep(86400)  # 24 hours

    backup_task = asyncio.create_task(_auto_backup_loop())

    yield

    # Shutdown: cancel automatic backup loop
    backup_task.cancel()
    try:
        await backup_task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="Agency Tasks",
    description="Task and client management backend with field-level encryption",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        f"https://{settings.domain}",
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(records.router)
app.include_router(backup.router)
app.include_router(audit.router)
app.include_router(maintenance.router)
