from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
from .db import dispose_engine, init_models
from .logger import get_logger
from .routers import files, message, uploads

log = get_logger(__name__)

@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.DB_AUTO_CREATE:
        await init_models()
        log.info("Database tables ensured")
    yield
    await dispose_engine()

app = FastAPI(title="PDF Whisperer", version="0.1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware,
    allow_origins=[o.strip() for o in settings.ALLOWED_ORIGINS.split(",")],
    allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

@app.get("/health")
async def health(): return {"status": "ok"}

app.include_router(message.router, prefix="/api")
app.include_router(uploads.router, prefix="/api")
app.include_router(files.router,   prefix="/api")
