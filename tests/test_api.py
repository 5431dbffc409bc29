"""HTTP surface tests using FastAPI's TestClient."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from app.api import create_app, sse_events
from citewise.pipeline import PipelineConfig, ResearchPipeline
from citewise.planner import PlannerConfig
from citewise.store import MemoryStore

from conftest import CROWDSTRIKE_RESULTS, FakeLLMClient, FakeSearchProvider, build_test_registry, wait_for

QUERY = "What caused the 2024 CrowdStrike outage?"


def _pipeline() -> ResearchPipeline:
    registry = build_test_registry(
        search=[
            FakeSearchProvider("tavily", CROWDSTRIKE_RESULTS["tavily"]),
            FakeSearchProvider("brave", CROWDSTRIKE_RESULTS["brave"]),
        ],
        llms=[FakeLLMClient()],
    )
    return ResearchPipeline(registry, MemoryStore(), config=PipelineConfig(planner=PlannerConfig(max_variants=1)))


@pytest.fixture
def client():
    with TestClient(create_app(_pipeline())) as test_client:
        yield test_client


def _completed(client, job_id):
    def done():
        return client.get(f"/v1/jobs/{job_id}").json()["status"] in ("completed", "failed")

    assert wait_for(done)
    return client.get(f"/v1/jobs/{job_id}").json()


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert "version" in body


def test_submit_returns_accepted_job(client):
    response = client.post("/v1/research", json={"query": QUERY})

    assert response.status_code == 202
    body = response.json()
    assert body["job_id"].startswith("job_")
    assert body["status"] == "pending"
    assert body["stream_url"] == f"/v1/jobs/{body['job_id']}/stream"


@pytest.mark.parametrize("payload", [{"query": ""}, {"query": "   "}, {}, {"question": "wrong field"}])
def test_invalid_request_body(client, payload):
    response = client.post("/v1/research", json=payload)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_unknown_job_is_404(client):
    for path in ("/v1/jobs/job_missing", "/v1/jobs/job_missing/sources", "/v1/jobs/job_missing/stream"):
        response = client.get(path)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


def test_job_completes_with_sources(client):
    job_id = client.post("/v1/research", json={"query": QUERY}).json()["job_id"]

    job = _completed(client, job_id)

    assert job["status"] == "completed"
    assert job["answer"]["confidence"] == "high"
    assert len(job["sources"]) == 5
    source_ids = {s["id"] for s in job["sources"]}
    assert all(c["source_id"] in source_ids for c in job["citations"])

    sources = client.get(f"/v1/jobs/{job_id}/sources").json()["sources"]
    assert [s["id"] for s in sources] == [s["id"] for s in job["sources"]]


def test_list_jobs(client):
    job_id = client.post("/v1/research", json={"query": QUERY}).json()["job_id"]
    _completed(client, job_id)
    jobs = client.get("/v1/jobs", params={"limit": 5}).json()["jobs"]
    assert [j["id"] for j in jobs] == [job_id]


@pytest.mark.asyncio
async def test_sse_events_payloads():
    pipeline = _pipeline()
    job = await pipeline.submit(QUERY)

    async def collect():
        return [item async for item in sse_events(pipeline, job.id)]

    items = await asyncio.wait_for(collect(), timeout=5)

    assert items[0]["event"] == "status"
    assert json.loads(items[0]["data"])["stage"] == "planning"
    assert items[-1]["event"] == "complete"
    assert json.loads(items[-1]["data"])["job_id"] == job.id
    assert [int(item["id"]) for item in items] == sorted(int(item["id"]) for item in items)
