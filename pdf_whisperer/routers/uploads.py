import hmac
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..db import get_session, get_session_factory
from ..logger import get_logger
from ..schemas import FileOut, UploadCompleteRequest
from .. import repository
from ..services.embedding import OpenAIEmbedder, get_embedder
from ..services.ingestion import Fetcher, get_fetcher, ingest_file
from ..services.vector_store import VectorIndex, get_vector_index

log = get_logger(__name__)

router = APIRouter(tags=["uploads"])


async def verify_upload_secret(x_upload_secret: Optional[str] = Header(default=None)) -> None:
    expected = settings.UPLOAD_WEBHOOK_SECRET
    if not expected:
        return
    if not hmac.compare_digest((x_upload_secret or "").encode(), expected.encode()):
        log.warning("Upload hook called without a valid secret")
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")


@router.post(
    "/uploadthing/complete",
    response_model=FileOut,
    status_code=201,
    dependencies=[Depends(verify_upload_secret)],
)
async def upload_complete(
    req: UploadCompleteRequest,
    background: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    SessionLocal: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    embedder: OpenAIEmbedder = Depends(get_embedder),
    index: VectorIndex = Depends(get_vector_index),
    fetch: Fetcher = Depends(get_fetcher),
):
    """Called by the upload service once the bytes are stored.

    When `UPLOAD_WEBHOOK_SECRET` is set the caller must send it in `X-Upload-Secret`.
    """
    await repository.ensure_user(session, req.owner_user_id)
    file = await repository.create_file(
        session,
        user_id=req.owner_user_id,
        key=req.file_key,
        name=req.file_name,
        url=settings.file_url(req.file_key),
    )
    log.info("Upload complete | file_id=%s | name=%s", file.id, file.name)

    background.add_task(
        ingest_file,
        file.id,
        file.url,
        embedder=embedder,
        index=index,
        session_factory=SessionLocal,
        fetch=fetch,
    )
    return file
