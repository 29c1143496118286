from typing import List
from openai import OpenAIError
from ..config import settings
from .llm import get_client


class EmbeddingError(Exception):
    """Ошибка при получении эмбеддингов"""
    pass


class OpenAIEmbedder:
    def __init__(self, model: str | None = None):
        self.model = model or settings.OPENAI_EMBED_MODEL

    async def embed_texts(self, chunks: List[str]) -> List[List[float]]:
        if not chunks:
            return []
        client = get_client()
        try:
            resp = await client.embeddings.create(model=self.model, input=chunks)
        except OpenAIError as e:
            raise EmbeddingError(f"OpenAI embeddings error: {e}") from e
        return [d.embedding for d in resp.data]

    async def embed_query(self, text: str) -> List[float]:
        return (await self.embed_texts([text]))[0]


_embedder: OpenAIEmbedder | None = None
def get_embedder() -> OpenAIEmbedder:
    global _embedder
    if _embedder is None:
        _embedder = OpenAIEmbedder()
    return _embedder
