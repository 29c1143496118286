from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import require_user
from ..config import settings
from ..db import get_session
from ..logger import get_logger
from ..schemas import FileOut, MessageOut, MessagesPage, UploadStatusOut
from .. import repository
from ..services.vector_store import VectorIndex, get_vector_index

log = get_logger(__name__)

router = APIRouter(tags=["files"])


async def _owned_file(session: AsyncSession, file_id: str, user_id: str):
    file = await repository.get_user_file(session, file_id, user_id)
    if file is None:
        raise HTTPException(status_code=404, detail="Not Found")
    return file


@router.get("/files", response_model=List[FileOut])
async def list_files(user_id: str = Depends(require_user), session: AsyncSession = Depends(get_session)):
    return await repository.list_user_files(session, user_id)


@router.get("/files/{file_id}", response_model=FileOut)
async def get_file(file_id: str, user_id: str = Depends(require_user), session: AsyncSession = Depends(get_session)):
    return await _owned_file(session, file_id, user_id)


@router.get("/files/{file_id}/status", response_model=UploadStatusOut)
async def get_upload_status(
    file_id: str, user_id: str = Depends(require_user), session: AsyncSession = Depends(get_session)
):
    # Клиент опрашивает статус, пока файл в обработке
    file = await repository.get_user_file(session, file_id, user_id)
    if file is None:
        return UploadStatusOut(status="PENDING")
    return UploadStatusOut(status=file.upload_status.value)


@router.delete("/files/{file_id}", response_model=FileOut)
async def delete_file(
    file_id: str,
    user_id: str = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    index: VectorIndex = Depends(get_vector_index),
):
    file = await _owned_file(session, file_id, user_id)
    out = FileOut.model_validate(file)
    await index.delete_namespace(str(file.id))
    await repository.delete_file(session, file)
    log.info("File deleted | file_id=%s", out.id)
    return out


@router.get("/files/{file_id}/messages", response_model=MessagesPage)
async def get_file_messages(
    file_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    cursor: Optional[int] = None,
    user_id: str = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    file = await _owned_file(session, file_id, user_id)
    messages, next_cursor = await repository.messages_page(
        session, file.id, limit or settings.INFINITE_QUERY_LIMIT, cursor
    )
    return MessagesPage(messages=[MessageOut.model_validate(m) for m in messages], next_cursor=next_cursor)
