import asyncio
from typing import Awaitable, Callable, List
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..db import get_session_local
from ..logger import get_logger
from ..models import File, UploadStatus
from .. import repository
from .embedding import OpenAIEmbedder
from .extract import ExtractionError, extract_page_texts
from .vector_store import VectorIndex, VectorRecord

log = get_logger(__name__)

Fetcher = Callable[[str], Awaitable[bytes]]

STATUS_WRITE_ATTEMPTS = 3
STATUS_WRITE_BACKOFF = 0.5


async def fetch_file_bytes(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=httpx.Timeout(60.0), follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


def get_fetcher() -> Fetcher:
    return fetch_file_bytes


def vector_id(file_id: UUID, page_number: int) -> str:
    # Детерминированный id: повторный запуск перезаписывает, а не дублирует
    return f"{file_id}-{page_number}"


async def build_records(file_id: UUID, content: bytes, embedder: OpenAIEmbedder) -> List[VectorRecord]:
    max_bytes = settings.MAX_FILE_SIZE_MB * 1024 * 1024
    if len(content) > max_bytes:
        raise ExtractionError(f"File is larger than {settings.MAX_FILE_SIZE_MB}MB")

    pages = await asyncio.to_thread(extract_page_texts, content)
    pages = [p for p in pages if p.text]
    embeddings = await embedder.embed_texts([p.text for p in pages])
    return [
        VectorRecord(
            id=vector_id(file_id, p.page_number),
            values=e,
            text=p.text,
            metadata={"fileId": str(file_id), "pageNumber": p.page_number},
        )
        for p, e in zip(pages, embeddings)
    ]


async def _write_status(SessionLocal: async_sessionmaker[AsyncSession], file_id: UUID, status: UploadStatus) -> bool:
    for attempt in range(1, STATUS_WRITE_ATTEMPTS + 1):
        try:
            async with SessionLocal() as session:
                await repository.finish_processing(session, file_id, status)
            return True
        except SQLAlchemyError:
            log.exception("Status write failed | file_id=%s | attempt=%d", file_id, attempt)
            if attempt < STATUS_WRITE_ATTEMPTS:
                await asyncio.sleep(STATUS_WRITE_BACKOFF * attempt)
    log.error("File %s is stuck in PROCESSING, %s was never stored", file_id, status.value)
    return False


async def _drop_namespace(index: VectorIndex, namespace: str) -> None:
    try:
        await index.delete_namespace(namespace)
    except Exception:
        log.exception("Could not drop partial namespace %s", namespace)


async def ingest_file(
    file_id: UUID,
    url: str,
    *,
    embedder: OpenAIEmbedder,
    index: VectorIndex,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    fetch: Fetcher = fetch_file_bytes,
) -> UploadStatus:
    """Index one uploaded PDF and move its status out of PROCESSING.

    Every exit path leaves the file SUCCESS or FAILED, including database
    errors and cancellation of the task. Files that are already terminal
    are left untouched, so the call is safe to repeat.
    """
    SessionLocal = session_factory or get_session_local()
    try:
        async with SessionLocal() as session:
            file = await session.get(File, file_id)
    except SQLAlchemyError:
        log.exception("Ingestion could not load file %s", file_id)
        await _write_status(SessionLocal, file_id, UploadStatus.FAILED)
        return UploadStatus.FAILED
    if file is None:
        log.warning("Ingestion skipped, file %s does not exist", file_id)
        return UploadStatus.FAILED
    if file.upload_status != UploadStatus.PROCESSING:
        log.info("Ingestion skipped, file %s is already %s", file_id, file.upload_status.value)
        return file.upload_status

    namespace = str(file_id)
    status = UploadStatus.FAILED
    log.info("Ingestion started | file_id=%s", file_id)
    try:
        content = await fetch(url)
        records = await build_records(file_id, content, embedder)
        await index.upsert(namespace, records)
        status = UploadStatus.SUCCESS
        log.info("Ingestion finished | file_id=%s | pages=%d", file_id, len(records))
    except asyncio.CancelledError:
        log.warning("Ingestion cancelled | file_id=%s", file_id)
        await _drop_namespace(index, namespace)
        raise
    except Exception:
        log.exception("Ingestion failed | file_id=%s", file_id)
        await _drop_namespace(index, namespace)
    finally:
        await _write_status(SessionLocal, file_id, status)
    return status
