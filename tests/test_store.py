"""Contract tests run against every store backend."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from citewise.errors import JobNotFound, StoreConflict
from citewise.store import MemoryStore, SQLiteStore, build_store
from citewise.types import Answer, Citation, Confidence, Job, JobMetadata, JobStatus

from conftest import make_source


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SQLiteStore(str(tmp_path / "db.sqlite"))


def _finish(job, sources):
    for status in (JobStatus.PLANNING, JobStatus.SEARCHING, JobStatus.SYNTHESIZING):
        job.transition_to(status)
    answer = Answer(
        summary="summary",
        confidence=Confidence.MEDIUM,
        citations=[Citation(claim="c", source_id=sources[0].id)],
    )
    job.complete(answer, JobMetadata(duration_ms=10, sources_considered=len(sources)))


@pytest.mark.asyncio
async def test_create_and_get_round_trip(store):
    job = Job.create("what is rust")
    await store.create_job(job)
    loaded = await store.get_job(job.id)
    assert loaded.query == "what is rust"
    assert loaded.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_duplicate_create_conflicts(store):
    job = Job.create("q")
    await store.create_job(job)
    with pytest.raises(StoreConflict):
        await store.create_job(job)


@pytest.mark.asyncio
async def test_unknown_job(store):
    with pytest.raises(JobNotFound):
        await store.get_job("job_missing")
    with pytest.raises(JobNotFound):
        await store.get_sources("job_missing")
    with pytest.raises(JobNotFound):
        await store.update_job(Job.create("q"))


@pytest.mark.asyncio
async def test_update_persists_status(store):
    job = Job.create("q")
    await store.create_job(job)
    job.transition_to(JobStatus.PLANNING)
    await store.update_job(job)
    assert (await store.get_job(job.id)).status == JobStatus.PLANNING


@pytest.mark.asyncio
async def test_complete_job_writes_answer_and_sources(store):
    sources = [make_source("https://a.com/1"), make_source("https://b.com/2")]
    job = Job.create("q")
    await store.create_job(job)
    _finish(job, sources)
    await store.complete_job(job, sources)

    loaded = await store.get_job(job.id)
    assert loaded.status == JobStatus.COMPLETED
    assert loaded.answer.summary == "summary"
    assert loaded.citations[0].source_id == sources[0].id
    assert loaded.completed_at is not None
    assert [s.id for s in await store.get_sources(job.id)] == [s.id for s in sources]


@pytest.mark.asyncio
async def test_store_sources_ignores_duplicates(store):
    job = Job.create("q")
    await store.create_job(job)
    source = make_source("https://a.com/1")
    await store.store_sources(job.id, [source])
    await store.store_sources(job.id, [source])
    assert len(await store.get_sources(job.id)) == 1


@pytest.mark.asyncio
async def test_list_jobs_newest_first(store):
    base = datetime(2024, 7, 19, tzinfo=timezone.utc)
    jobs = [Job(query=f"query {i}", created_at=base + timedelta(minutes=i)) for i in range(3)]
    for job in jobs:
        await store.create_job(job)
    listed = await store.list_jobs(limit=2)
    assert [j.id for j in listed] == [jobs[2].id, jobs[1].id]
    assert [j.id for j in await store.list_jobs(limit=2, offset=2)] == [jobs[0].id]


@pytest.mark.asyncio
async def test_find_similar_only_matches_completed_jobs(store):
    sources = [make_source("https://a.com/1")]
    done = Job.create("done")
    pending = Job.create("pending")
    await store.create_job(done)
    await store.create_job(pending)
    _finish(done, sources)
    await store.complete_job(done, sources)

    vector = np.array([1.0, 0.0, 0.0], dtype=np.float32)
    await store.store_embedding(done.id, vector)
    await store.store_embedding(pending.id, vector)

    assert await store.find_similar([0.99, 0.05, 0.0], threshold=0.9) == done.id
    assert await store.find_similar([0.0, 1.0, 0.0], threshold=0.9) is None
    assert await store.find_similar([1.0, 0.0], threshold=0.9) is None


@pytest.mark.asyncio
async def test_find_similar_respects_since(store):
    sources = [make_source("https://a.com/1")]
    job = Job.create("done")
    await store.create_job(job)
    _finish(job, sources)
    await store.complete_job(job, sources)
    await store.store_embedding(job.id, [1.0, 0.0])

    later = job.completed_at + timedelta(days=1)
    assert await store.find_similar([1.0, 0.0], threshold=0.9, since=later) is None
    assert await store.find_similar([1.0, 0.0], threshold=0.9, since=job.created_at) == job.id


def test_build_store(tmp_path):
    assert isinstance(build_store({}), MemoryStore)
    assert isinstance(build_store({"backend": "sqlite", "path": str(tmp_path / "x.db")}), SQLiteStore)
    with pytest.raises(ValueError):
        build_store({"backend": "redis"})
