from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..auth import require_user
from ..config import settings
from ..db import get_session, get_session_factory
from ..logger import get_logger
from ..models import UploadStatus
from ..schemas import SendMessageRequest
from .. import repository
from ..services.embedding import EmbeddingError, OpenAIEmbedder, get_embedder
from ..services.llm import LLMConfigurationError, LLMServiceError, OpenAIChatModel, get_chat_model
from ..services.rag import build_prompt, relay_completion, retrieve_chunks
from ..services.vector_store import VectorIndex, VectorStoreError, get_vector_index

log = get_logger(__name__)

router = APIRouter(tags=["message"])


@router.post("/message")
async def send_message(
    req: SendMessageRequest,
    user_id: str = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    SessionLocal: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    embedder: OpenAIEmbedder = Depends(get_embedder),
    index: VectorIndex = Depends(get_vector_index),
    chat_model: OpenAIChatModel = Depends(get_chat_model),
):
    file = await repository.get_user_file(session, req.file_id, user_id)
    if file is None:
        raise HTTPException(status_code=404, detail="Not Found")
    if file.upload_status != UploadStatus.SUCCESS:
        raise HTTPException(status_code=409, detail="File is not ready")

    log.info("Chat request | file_id=%s | user_id=%s", file.id, user_id)

    # Вопрос сохраняем до поиска, чтобы он остался даже при ошибке генерации
    await repository.add_message(
        session, file_id=file.id, user_id=user_id, text=req.message, is_user_message=True
    )

    try:
        chunks = await retrieve_chunks(index, embedder, file.id, req.message)
        history = await repository.recent_messages(session, file.id, settings.HISTORY_LIMIT)
        prompt = build_prompt(history, chunks, req.message)
        deltas = chat_model.stream_chat(prompt)
        # Первый кусок берем до ответа, чтобы ошибки запроса вернулись как 502
        first = await anext(deltas, None)
    except (LLMConfigurationError, EmbeddingError, VectorStoreError) as e:
        log.error("Chat pipeline misconfigured or index unavailable: %s", e)
        raise HTTPException(status_code=502, detail="Service temporarily unavailable. Please try again later.")
    except LLMServiceError as e:
        log.error("Upstream LLM error: %s", e)
        raise HTTPException(status_code=502, detail="Upstream LLM error")

    async def _replay():
        if first is not None:
            yield first
        async for delta in deltas:
            yield delta

    file_id = file.id

    async def _persist_answer(text: str) -> None:
        async with SessionLocal() as s:
            await repository.add_message(s, file_id=file_id, user_id=user_id, text=text, is_user_message=False)
        log.info("Assistant message stored | file_id=%s | chars=%d", file_id, len(text))

    return StreamingResponse(
        relay_completion(_replay(), _persist_answer),
        media_type="text/plain; charset=utf-8",
    )
