from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import File, Message, UploadStatus, User


async def ensure_user(session: AsyncSession, user_id: str, email: str | None = None) -> User:
    user = await session.get(User, user_id)
    if user is None:
        session.add(User(id=user_id, email=email))
        try:
            await session.commit()
        except IntegrityError:
            # Параллельный первый запрос того же пользователя успел вставить строку
            await session.rollback()
        user = await session.get(User, user_id)
    return user


async def create_file(session: AsyncSession, *, user_id: str, key: str, name: str, url: str) -> File:
    file = File(user_id=user_id, key=key, name=name, url=url, upload_status=UploadStatus.PROCESSING)
    session.add(file)
    await session.commit()
    await session.refresh(file)
    return file


async def get_user_file(session: AsyncSession, file_id: UUID | str, user_id: str) -> Optional[File]:
    if not isinstance(file_id, UUID):
        try:
            file_id = UUID(file_id)
        except ValueError:
            # Такой id сервис никогда не выдавал
            return None
    res = await session.execute(select(File).where(File.id == file_id, File.user_id == user_id))
    return res.scalar_one_or_none()


async def list_user_files(session: AsyncSession, user_id: str) -> List[File]:
    res = await session.execute(
        select(File).where(File.user_id == user_id).order_by(File.created_at.desc())
    )
    return list(res.scalars())


async def finish_processing(session: AsyncSession, file_id: UUID, status: UploadStatus) -> bool:
    """Move a file out of PROCESSING. Returns False if it was already terminal."""
    res = await session.execute(
        update(File)
        .where(File.id == file_id, File.upload_status == UploadStatus.PROCESSING)
        .values(upload_status=status)
    )
    await session.commit()
    return res.rowcount == 1


async def delete_file(session: AsyncSession, file: File) -> None:
    await session.execute(delete(Message).where(Message.file_id == file.id))
    await session.delete(file)
    await session.commit()


async def add_message(session: AsyncSession, *, file_id: UUID, user_id: str, text: str, is_user_message: bool) -> Message:
    msg = Message(file_id=file_id, user_id=user_id, text=text, is_user_message=is_user_message)
    session.add(msg)
    await session.commit()
    return msg


async def recent_messages(session: AsyncSession, file_id: UUID, limit: int) -> List[Message]:
    """Last `limit` messages of a file, oldest first."""
    res = await session.execute(
        select(Message)
        .where(Message.file_id == file_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    rows = list(res.scalars())
    rows.reverse()
    return rows


async def messages_page(
    session: AsyncSession, file_id: UUID, limit: int, cursor: int | None = None
) -> Tuple[List[Message], Optional[int]]:
    """Newest-first page of messages and the cursor of the next page."""
    stmt = select(Message).where(Message.file_id == file_id)
    if cursor is not None:
        stmt = stmt.where(Message.id <= cursor)
    res = await session.execute(stmt.order_by(Message.id.desc()).limit(limit + 1))
    rows = list(res.scalars())
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows.pop().id
    return rows, next_cursor
