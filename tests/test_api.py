import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config import Config

from .conftest import SAMPLE_PAPERS, extraction_json, fast_queue_configs

TERMINAL = {"converged", "exhausted", "failed", "cancelled"}


class BrokenGenerator:
    async def generate(self, prompt, options=None):
        raise ValueError("malformed request")


class SlowGenerator:
    """Answers every call after a short delay so runs stay in flight."""

    def __init__(self, delay=0.5):
        self.delay = delay

    async def generate(self, prompt, options=None):
        await asyncio.sleep(self.delay)
        if options is not None and options.system.startswith("You are a Micro Agent"):
            return extraction_json()
        return "not json"


@pytest.fixture
def client():
    app = create_app(Config(), queue_configs=fast_queue_configs())
    with TestClient(app) as client:
        yield client


def wait_for_terminal(client, run_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/runs/{run_id}/status").json()
        if status["status"] in TERMINAL:
            return status
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


def create_run(client, **config):
    body = {"topic": "climate ml", "papers": SAMPLE_PAPERS}
    if config:
        body["config"] = config
    response = client.post("/runs", json=body)
    assert response.status_code == 202
    return response.json()["run_id"]


def test_root_and_health(client):
    root = client.get("/").json()
    assert root["tiers"] == ["micro", "meso", "meta"]

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["anthropic_configured"] is False
    assert set(health["queues"]) == {"micro", "meso", "meta"}
    assert health["active_runs"] == 0


def test_run_lifecycle(client):
    run_id = create_run(client, max_iterations=1)

    status = wait_for_terminal(client, run_id)
    assert status["status"] == "exhausted"
    assert status["max_iterations"] == 1
    assert status["agents"]["micro"]["completed"] == 3

    results = client.get(f"/runs/{run_id}/results").json()
    assert results["iterations_completed"] == 1
    assert results["final"]["ranked_gaps"]

    runs = client.get("/runs").json()["runs"]
    assert [r["id"] for r in runs] == [run_id]

    agents = client.get(f"/runs/{run_id}/agents", params={"tier": "meso"}).json()["agents"]
    assert len(agents) == 1

    logs = client.get(f"/runs/{run_id}/logs", params={"limit": 2}).json()["logs"]
    assert len(logs) == 2


def test_contexts_endpoints(client):
    run_id = create_run(client, max_iterations=1)
    wait_for_terminal(client, run_id)

    contexts = client.get(f"/runs/{run_id}/contexts").json()["contexts"]
    meta = next(c for c in contexts if c["context_key"] == "meta_output_1")

    url = f"/runs/{run_id}/contexts/{meta['agent_id']}/meta_output_1"
    record = client.get(url).json()
    assert record["version"] == 1
    assert record["data"]["iteration"] == 1

    summary = client.get(url, params={"summary_only": True}).json()
    assert "data" not in summary

    versions = client.get(f"{url}/versions").json()["versions"]
    assert [v["version"] for v in versions] == [1]

    missing = client.get(f"/runs/{run_id}/contexts/{meta['agent_id']}/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "context_not_found"


def test_unknown_run_is_404(client):
    response = client.get("/runs/missing/status")
    assert response.status_code == 404
    assert response.json() == {"error": "run_not_found", "detail": "no such run"}


def test_cancel_finished_run_conflicts(client):
    run_id = create_run(client, max_iterations=1)
    wait_for_terminal(client, run_id)

    response = client.post(f"/runs/{run_id}/cancel")
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


def test_failed_run_has_no_results():
    app = create_app(Config(), text_generator=BrokenGenerator(), queue_configs=fast_queue_configs())
    with TestClient(app) as client:
        run_id = create_run(client)
        status = wait_for_terminal(client, run_id)
        assert status["status"] == "failed"
        assert status["error_label"] == "insufficient_data"

        response = client.get(f"/runs/{run_id}/results")
        assert response.status_code == 409
        assert response.json()["error"] == "results_not_ready"


@pytest.mark.parametrize("body", [
    {"topic": "climate ml", "papers": []},
    {"topic": "", "papers": SAMPLE_PAPERS},
    {"topic": "climate ml", "papers": SAMPLE_PAPERS, "config": {"max_iterations": 0}},
    {"topic": "climate ml", "papers": SAMPLE_PAPERS, "config": {"convergence_threshold": 2}},
    {"topic": "climate ml", "papers": SAMPLE_PAPERS, "config": {"min_cluster_size": 5, "max_clusters": 3}},
])
def test_invalid_requests_are_rejected(client, body):
    assert client.post("/runs", json=body).status_code == 422


def test_queue_stats(client):
    stats = client.get("/queues/stats").json()
    assert [q["queue"] for q in stats["queues"]] == ["micro", "meso", "meta"]


def test_sweep_contexts(client):
    run_id = create_run(client, max_iterations=1)
    wait_for_terminal(client, run_id)

    response = client.post("/contexts/sweep", json={"run_id": run_id, "older_than_days": 0})
    assert response.status_code == 200
    assert response.json() == {"removed": 0}


def test_job_progress_is_visible_while_running():
    app = create_app(Config(), text_generator=SlowGenerator(), queue_configs=fast_queue_configs())
    with TestClient(app) as client:
        run_id = create_run(client, max_iterations=1)

        in_flight = None
        deadline = time.monotonic() + 5
        while in_flight is None and time.monotonic() < deadline:
            agents = client.get(f"/runs/{run_id}/agents", params={"tier": "micro"}).json()["agents"]
            in_flight = next(
                (a for a in agents if a["job"] and a["job"]["status"] == "active"), None
            )
            time.sleep(0.02)
        assert in_flight is not None
        assert 10 <= in_flight["job"]["progress"] < 100
        assert in_flight["job"]["attempts_made"] == 1

        job = client.get(f"/jobs/{in_flight['job_id']}").json()
        assert job["queue"] == "micro"
        assert job["data"]["run_id"] == run_id

        wait_for_terminal(client, run_id)
        job = client.get(f"/jobs/{in_flight['job_id']}").json()
        assert job["status"] == "completed"
        assert job["progress"] == 100


def test_unknown_job_is_404(client):
    response = client.get("/jobs/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "job_not_found"


def test_context_keys_with_slashes():
    papers = SAMPLE_PAPERS[:1] + [{
        "doi": "10.1000/xyz",
        "title": "Ocean Heat Uptake Under Warming",
        "abstract": "We estimate ocean heat uptake with a novel reanalysis method.",
        "full_text": "Introduction. Methods. Argo float dataset. Limitations. Sparse deep coverage.",
    }]
    app = create_app(Config(), queue_configs=fast_queue_configs())
    with TestClient(app) as client:
        response = client.post("/runs", json={"topic": "ocean", "papers": papers, "config": {"max_iterations": 1}})
        run_id = response.json()["run_id"]
        wait_for_terminal(client, run_id)

        agents = client.get(f"/runs/{run_id}/agents", params={"tier": "micro"}).json()["agents"]
        micro = next(a for a in agents if a["name"] == "micro-10.1000/xyz")
        url = f"/runs/{run_id}/contexts/{micro['id']}/micro_output_1_10.1000/xyz"
        record = client.get(url)
        assert record.status_code == 200
        assert record.json()["context_key"] == "micro_output_1_10.1000/xyz"

        versions = client.get(f"{url}/versions").json()["versions"]
        assert [v["version"] for v in versions] == [1]


def test_pause_and_resume_queue(client):
    paused = client.post("/queues/micro/pause")
    assert paused.status_code == 200
    assert paused.json()["paused"] is True

    run_id = create_run(client, max_iterations=1)
    time.sleep(0.1)
    assert client.get(f"/runs/{run_id}/status").json()["status"] == "running"

    assert client.post("/queues/micro/resume").json()["paused"] is False
    assert wait_for_terminal(client, run_id)["status"] == "exhausted"

    assert client.post("/queues/nope/pause").status_code == 404


def test_cleanup_runs(client):
    run_id = create_run(client, max_iterations=1)
    wait_for_terminal(client, run_id)

    kept = client.post("/runs/cleanup", json={}).json()["removed"]
    assert kept["runs"] == 0

    removed = client.post("/runs/cleanup", json={"older_than_days": 0}).json()["removed"]
    assert removed["runs"] == 1
    assert client.get(f"/runs/{run_id}/status").status_code == 404
