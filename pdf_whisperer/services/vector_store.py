import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

import numpy as np

from ..config import settings
from ..logger import get_logger

log = get_logger(__name__)

UPSERT_BATCH_SIZE = 100


class VectorStoreConfigurationError(Exception):
    """Векторный индекс не настроен (нет API ключа, неизвестный backend)"""
    pass


class VectorStoreError(Exception):
    """Ошибка при обращении к векторному индексу"""
    pass


@dataclass
class VectorRecord:
    id: str
    values: List[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredChunk:
    id: str
    score: float
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    async def upsert(self, namespace: str, records: List[VectorRecord]) -> None: ...
    async def query(self, namespace: str, vector: List[float], top_k: int) -> List[ScoredChunk]: ...
    async def delete_namespace(self, namespace: str) -> None: ...


def _to_vec(raw) -> np.ndarray:
    if raw is None:
        raw = []
    return np.asarray([float(x) for x in raw], dtype=np.float32).reshape(-1)


def _cosine(q: np.ndarray, e: np.ndarray) -> float:
    if q.size == 0 or e.size == 0:
        return 0.0
    return float(np.dot(q, e) / (np.linalg.norm(q) * np.linalg.norm(e) + 1e-8))


class InMemoryVectorIndex:
    """Process-local index for development and tests. Same namespace rules as Pinecone."""

    def __init__(self) -> None:
        self._namespaces: Dict[str, Dict[str, VectorRecord]] = {}

    async def upsert(self, namespace: str, records: List[VectorRecord]) -> None:
        ns = self._namespaces.setdefault(namespace, {})
        for r in records:
            ns[r.id] = r

    async def query(self, namespace: str, vector: List[float], top_k: int) -> List[ScoredChunk]:
        q = _to_vec(vector)
        scored = [
            ScoredChunk(id=r.id, score=_cosine(q, _to_vec(r.values)), text=r.text, metadata=dict(r.metadata))
            for r in self._namespaces.get(namespace, {}).values()
        ]
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:top_k]

    async def delete_namespace(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)

    def count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))


class PineconeVectorIndex:
    """Pinecone index; the sync client runs in a worker thread."""

    def __init__(self, api_key: str, index_name: str):
        from pinecone import Pinecone

        self._index = Pinecone(api_key=api_key).Index(index_name)

    async def upsert(self, namespace: str, records: List[VectorRecord]) -> None:
        vectors = [
            {"id": r.id, "values": r.values, "metadata": {**r.metadata, "text": r.text}}
            for r in records
        ]
        try:
            for start in range(0, len(vectors), UPSERT_BATCH_SIZE):
                batch = vectors[start:start + UPSERT_BATCH_SIZE]
                await asyncio.to_thread(self._index.upsert, vectors=batch, namespace=namespace)
        except Exception as e:
            raise VectorStoreError(f"Pinecone upsert failed: {e}") from e

    async def query(self, namespace: str, vector: List[float], top_k: int) -> List[ScoredChunk]:
        try:
            res = await asyncio.to_thread(
                self._index.query, vector=vector, top_k=top_k, namespace=namespace, include_metadata=True
            )
        except Exception as e:
            raise VectorStoreError(f"Pinecone query failed: {e}") from e
        out: List[ScoredChunk] = []
        for m in res.matches:
            meta = dict(m.metadata or {})
            text = meta.pop("text", "")
            out.append(ScoredChunk(id=m.id, score=float(m.score or 0.0), text=text, metadata=meta))
        return out

    async def delete_namespace(self, namespace: str) -> None:
        from pinecone.exceptions import NotFoundException

        try:
            await asyncio.to_thread(self._index.delete, delete_all=True, namespace=namespace)
        except NotFoundException:
            log.info("Pinecone namespace %s already absent", namespace)
        except Exception as e:
            raise VectorStoreError(f"Pinecone delete failed: {e}") from e


_index: VectorIndex | None = None
def get_vector_index() -> VectorIndex:
    global _index
    if _index is None:
        backend = (settings.VECTOR_BACKEND or "pinecone").lower()
        if backend == "memory":
            _index = InMemoryVectorIndex()
        elif backend == "pinecone":
            if not settings.PINECONE_API_KEY:
                raise VectorStoreConfigurationError(
                    "PINECONE_API_KEY is not set. Please configure PINECONE_API_KEY in environment variables."
                )
            _index = PineconeVectorIndex(settings.PINECONE_API_KEY, settings.PINECONE_INDEX)
        else:
            raise VectorStoreConfigurationError(f"Unknown VECTOR_BACKEND: {settings.VECTOR_BACKEND}")
    return _index
