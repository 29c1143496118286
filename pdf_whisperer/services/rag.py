from typing import AsyncIterator, Awaitable, Callable, Dict, List, Sequence
from uuid import UUID

from ..config import settings
from ..models import Message
from .embedding import OpenAIEmbedder
from .vector_store import ScoredChunk, VectorIndex

SYSTEM = (
    "Use the following pieces of context (or previous conversation if needed) "
    "to answer the users question in markdown format."
)

USER_TEMPLATE = """Use the following pieces of context (or previous conversation if needed) to answer the users question in markdown format.
If you don't know the answer, just say that you don't know, don't try to make up an answer.

----------------

PREVIOUS CONVERSATION:
{history}

----------------

CONTEXT:
{contexts}

USER INPUT: {question}"""


def format_history(messages: Sequence[Message]) -> str:
    lines = []
    for m in messages:
        speaker = "User" if m.is_user_message else "Assistant"
        lines.append(f"{speaker}: {m.text}")
    return "\n".join(lines)


async def retrieve_chunks(
    index: VectorIndex,
    embedder: OpenAIEmbedder,
    file_id: UUID,
    question: str,
    k: int | None = None,
) -> List[ScoredChunk]:
    """Top-k chunks of one file. Only the file's own namespace is searched."""
    k = settings.RETRIEVAL_TOP_K if k is None else k
    q_emb = await embedder.embed_query(question)
    results = await index.query(str(file_id), q_emb, k)
    return results[:k]


def build_prompt(
    history: Sequence[Message],
    chunks: Sequence[ScoredChunk],
    question: str,
    *,
    history_limit: int | None = None,
    top_k: int | None = None,
) -> List[Dict[str, str]]:
    history_limit = settings.HISTORY_LIMIT if history_limit is None else history_limit
    top_k = settings.RETRIEVAL_TOP_K if top_k is None else top_k
    recent = list(history)[-history_limit:] if history_limit > 0 else []
    content = USER_TEMPLATE.format(
        history=format_history(recent),
        contexts="\n\n".join(c.text for c in list(chunks)[:top_k]),
        question=question,
    )
    return [
        {"role": "system", "content": SYSTEM},
        {"role": "user", "content": content},
    ]


async def relay_completion(
    deltas: AsyncIterator[str],
    on_complete: Callable[[str], Awaitable[None]],
) -> AsyncIterator[bytes]:
    """Forward model deltas as they arrive and hand the full text to `on_complete`.

    `on_complete` runs once, after the model stream ends. A stream that fails
    or is abandoned by the client never reaches it.
    """
    parts: List[str] = []
    async for delta in deltas:
        parts.append(delta)
        yield delta.encode("utf-8")
    await on_complete("".join(parts))
