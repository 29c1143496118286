import os
import re
import zlib
from typing import AsyncIterator, Dict, List

os.environ.setdefault("VECTOR_BACKEND", "memory")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DB_AUTO_CREATE", "false")

import httpx
import numpy as np
import pytest

from pdf_whisperer import db, models  # noqa: F401  (registers tables)
from pdf_whisperer.config import settings
from pdf_whisperer.main import app
from pdf_whisperer.services.embedding import EmbeddingError, get_embedder
from pdf_whisperer.services.ingestion import get_fetcher
from pdf_whisperer.services.llm import get_chat_model
from pdf_whisperer.services.vector_store import InMemoryVectorIndex, get_vector_index

EMBED_DIM = 128


def make_pdf(pages: List[str]) -> bytes:
    """Small text-only PDF, one line of Helvetica per page."""
    page_ids = [4 + 2 * i for i in range(len(pages))]
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        ("<< /Type /Pages /Kids [%s] /Count %d >>" % (" ".join(f"{p} 0 R" for p in page_ids), len(pages))).encode(),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for page_id, text in zip(page_ids, pages):
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                "/Resources << /Font << /F1 3 0 R >> >> /Contents %d 0 R >>" % (page_id + 1)
            ).encode()
        )
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode("latin-1")
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for off in offsets:
        out += b"%010d 00000 n \n" % off
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref)
    return bytes(out)


class FakeEmbedder:
    """Bag-of-words hashing embedder: texts sharing words get close vectors."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.fail = False

    def _vec(self, text: str) -> List[float]:
        v = np.zeros(EMBED_DIM, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            v[zlib.crc32(word.encode()) % EMBED_DIM] += 1.0
        return v.tolist()

    async def embed_texts(self, chunks: List[str]) -> List[List[float]]:
        self.calls.append(list(chunks))
        if self.fail:
            raise EmbeddingError("embedding service down")
        return [self._vec(c) for c in chunks]

    async def embed_query(self, text: str) -> List[float]:
        return (await self.embed_texts([text]))[0]


class FakeChatModel:
    def __init__(self, chunks: List[str] | None = None) -> None:
        self.chunks = chunks if chunks is not None else ["## Summary\n", "Page two ", "covers revenue."]
        self.prompts: List[List[Dict[str, str]]] = []
        self.fail_after: int | None = None
        # Ошибка до первого куска, как у отклоненного запроса к модели
        self.fail_with: Exception | None = None

    async def stream_chat(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        self.prompts.append(messages)
        if self.fail_with is not None:
            raise self.fail_with
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("model stream dropped")
            yield chunk


class FakeFetcher:
    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}

    async def __call__(self, url: str) -> bytes:
        if url not in self.files:
            raise httpx.HTTPStatusError(
                "404 Not Found",
                request=httpx.Request("GET", url),
                response=httpx.Response(404, request=httpx.Request("GET", url)),
            )
        return self.files[url]


@pytest.fixture
async def database(tmp_path):
    settings.DATABASE_URL = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    await db.dispose_engine()
    await db.init_models()
    yield db.get_session_local()
    await db.dispose_engine()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def overrides(database, embedder, index, chat_model, fetcher):
    app.dependency_overrides[get_embedder] = lambda: embedder
    app.dependency_overrides[get_vector_index] = lambda: index
    app.dependency_overrides[get_chat_model] = lambda: chat_model
    app.dependency_overrides[get_fetcher] = lambda: fetcher
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(overrides):
    transport = httpx.ASGITransport(app=overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def auth(user_id: str = "user-1") -> Dict[str, str]:
    return {"X-User-Id": user_id}


async def upload(client, fetcher, pages: List[str], *, key: str = "report-key", name: str = "report.pdf",
                 user_id: str = "user-1") -> dict:
    """Register an uploaded PDF and let its background ingestion run."""
    fetcher.files[settings.file_url(key)] = make_pdf(pages)
    resp = await client.post(
        "/api/uploadthing/complete",
        json={"fileKey": key, "fileName": name, "ownerUserId": user_id},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()
