import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.exc import OperationalError

from pdf_whisperer import repository
from pdf_whisperer.config import settings
from pdf_whisperer.models import File, UploadStatus
from pdf_whisperer.services import ingestion
from pdf_whisperer.services.ingestion import ingest_file

from conftest import make_pdf


async def _new_file(SessionLocal, key="k1"):
    async with SessionLocal() as s:
        await repository.ensure_user(s, "user-1")
        return await repository.create_file(
            s, user_id="user-1", key=key, name=f"{key}.pdf", url=settings.file_url(key)
        )


async def _status(SessionLocal, file_id):
    async with SessionLocal() as s:
        return (await s.get(File, file_id)).upload_status


async def test_success_indexes_every_page(database, embedder, index, fetcher):
    file = await _new_file(database)
    fetcher.files[file.url] = make_pdf(["Intro", "Summary of results", "Appendix"])

    status = await ingest_file(file.id, file.url, embedder=embedder, index=index,
                               session_factory=database, fetch=fetcher)

    assert status == UploadStatus.SUCCESS
    assert await _status(database, file.id) == UploadStatus.SUCCESS
    assert index.count(str(file.id)) == 3
    hit = (await index.query(str(file.id), await embedder.embed_query("Summary of results"), 1))[0]
    assert hit.id == f"{file.id}-2"
    assert hit.metadata["pageNumber"] == 2


async def test_fetch_failure_marks_failed(database, embedder, index, fetcher):
    file = await _new_file(database)

    status = await ingest_file(file.id, file.url, embedder=embedder, index=index,
                               session_factory=database, fetch=fetcher)

    assert status == UploadStatus.FAILED
    assert await _status(database, file.id) == UploadStatus.FAILED


async def test_extraction_failure_marks_failed(database, embedder, index, fetcher):
    file = await _new_file(database)
    fetcher.files[file.url] = b"not a pdf"

    await ingest_file(file.id, file.url, embedder=embedder, index=index,
                      session_factory=database, fetch=fetcher)

    assert await _status(database, file.id) == UploadStatus.FAILED


async def test_index_failure_leaves_no_partial_namespace(database, embedder, index, fetcher):
    file = await _new_file(database)
    fetcher.files[file.url] = make_pdf(["one", "two"])

    class BrokenIndex(type(index)):
        async def upsert(self, namespace, records):
            await super().upsert(namespace, records[:1])
            raise RuntimeError("index write failed")

    broken = BrokenIndex()
    await ingest_file(file.id, file.url, embedder=embedder, index=broken,
                      session_factory=database, fetch=fetcher)

    assert await _status(database, file.id) == UploadStatus.FAILED
    assert broken.count(str(file.id)) == 0


async def test_embedding_failure_marks_failed(database, embedder, index, fetcher):
    file = await _new_file(database)
    fetcher.files[file.url] = make_pdf(["one"])
    embedder.fail = True

    await ingest_file(file.id, file.url, embedder=embedder, index=index,
                      session_factory=database, fetch=fetcher)

    assert await _status(database, file.id) == UploadStatus.FAILED
    assert index.count(str(file.id)) == 0


async def test_terminal_file_is_not_reingested(database, embedder, index, fetcher):
    file = await _new_file(database)
    fetcher.files[file.url] = make_pdf(["one", "two"])
    await ingest_file(file.id, file.url, embedder=embedder, index=index,
                      session_factory=database, fetch=fetcher)
    calls = len(embedder.calls)

    status = await ingest_file(file.id, file.url, embedder=embedder, index=index,
                               session_factory=database, fetch=fetcher)

    assert status == UploadStatus.SUCCESS
    assert len(embedder.calls) == calls
    assert index.count(str(file.id)) == 2


async def test_status_moves_only_once(database):
    file = await _new_file(database)
    async with database() as s:
        assert await repository.finish_processing(s, file.id, UploadStatus.FAILED)
        assert not await repository.finish_processing(s, file.id, UploadStatus.SUCCESS)
    assert await _status(database, file.id) == UploadStatus.FAILED


class FlakySessions:
    """Session factory whose n-th sessions fail as if the database dropped the connection."""

    def __init__(self, factory, failing_calls):
        self.factory = factory
        self.failing_calls = set(failing_calls)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls in self.failing_calls:
            return self._broken()
        return self.factory()

    @asynccontextmanager
    async def _broken(self):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        yield


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(ingestion, "STATUS_WRITE_BACKOFF", 0)


async def test_cancelled_ingestion_ends_failed(database, embedder, index):
    file = await _new_file(database)
    started = asyncio.Event()

    async def hanging_fetch(url):
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(ingest_file(file.id, file.url, embedder=embedder, index=index,
                                           session_factory=database, fetch=hanging_fetch))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert await _status(database, file.id) == UploadStatus.FAILED
    assert index.count(str(file.id)) == 0


async def test_status_write_is_retried(database, embedder, index, fetcher, no_backoff):
    file = await _new_file(database)
    fetcher.files[file.url] = make_pdf(["one"])
    sessions = FlakySessions(database, failing_calls=[2])

    status = await ingest_file(file.id, file.url, embedder=embedder, index=index,
                               session_factory=sessions, fetch=fetcher)

    assert status == UploadStatus.SUCCESS
    assert sessions.calls == 3
    assert await _status(database, file.id) == UploadStatus.SUCCESS


async def test_unreadable_file_row_still_ends_failed(database, embedder, index, fetcher, no_backoff):
    file = await _new_file(database)
    fetcher.files[file.url] = make_pdf(["one"])

    status = await ingest_file(file.id, file.url, embedder=embedder, index=index,
                               session_factory=FlakySessions(database, failing_calls=[1]), fetch=fetcher)

    assert status == UploadStatus.FAILED
    assert embedder.calls == []
    assert await _status(database, file.id) == UploadStatus.FAILED
