import asyncio
import threading
import time

import pytest
from fastapi.testclient import TestClient

from app.adapters.stages import StageExecutor, StageFailure
from app.core.config import Settings
from app.main import create_app

_TERMINAL = {"completed", "failed", "cancelled"}


class _Gate(StageExecutor):
    def __init__(self, outcomes=None):
        self.open = threading.Event()
        self.entered = threading.Event()
        self.outcomes = list(outcomes or [])
        self.calls = 0

    async def execute(self, ctx):
        self.calls += 1
        self.entered.set()
        while not self.open.is_set():
            await asyncio.sleep(0.005)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return {"stage": ctx.stage}


def _settings(**overrides):
    values = {
        "mock_stage_delay_seconds": 0,
        "stage_retry_delay_seconds": 0,
        "store_retry_base_delay_seconds": 0,
        "shutdown_grace_seconds": 1,
    }
    values.update(overrides)
    return Settings(**values)


def _wait(client, job_id, statuses=_TERMINAL, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/v1/jobs/{job_id}").json()
        if body.get("status") in statuses or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


@pytest.fixture
def gated_client():
    gates = {"fetch": _Gate(), "extract": _Gate(), "transcribe": _Gate(), "enhance": _Gate()}
    app = create_app(_settings(), executors=gates)
    with TestClient(app) as client:
        yield client, gates
        for gate in gates.values():
            gate.open.set()


@pytest.mark.p0
@pytest.mark.test_id("SUB_001")
def test_sub_001(gated_client):
    """Given a valid source, when POST /jobs is called, then a queued job id is returned with 202."""
    client, _ = gated_client

    response = client.post("/api/v1/jobs", json={"source": "https://example/video1"})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    assert body["job_id"]


@pytest.mark.p0
@pytest.mark.test_id("SUB_002")
def test_sub_002(gated_client):
    """Given a job id that is still in flight, when POST /jobs reuses it, then 409 JOB_ALREADY_RUNNING leaves it untouched."""
    client, gates = gated_client
    client.post("/api/v1/jobs", json={"source": "https://example/video1", "job_id": "contract-job-01"})
    assert gates["fetch"].entered.wait(timeout=5)

    response = client.post("/api/v1/jobs", json={"source": "https://example/other", "job_id": "contract-job-01"})

    assert response.status_code == 409
    assert response.json()["code"] == "JOB_ALREADY_RUNNING"
    assert response.json()["details"] == {"current_status": "running"}
    assert gates["fetch"].calls == 1


@pytest.mark.p0
@pytest.mark.test_id("STA_001")
def test_sta_001(gated_client):
    """Given a job inside the transcribe stage, when GET /jobs/{jobId} is called, then progress equals the weight of completed stages."""
    client, gates = gated_client
    client.post("/api/v1/jobs", json={"source": "https://example/video1", "job_id": "contract-job-02"})
    gates["fetch"].open.set()
    gates["extract"].open.set()
    assert gates["transcribe"].entered.wait(timeout=5)

    body = client.get("/api/v1/jobs/contract-job-02").json()

    assert body["status"] == "running"
    assert body["current_stage"] == "transcribe"
    assert body["progress"] == 40

    gates["transcribe"].open.set()
    gates["enhance"].open.set()
    final = _wait(client, "contract-job-02")
    assert final["status"] == "completed"
    assert final["progress"] == 100


@pytest.mark.p0
@pytest.mark.test_id("STA_002")
def test_sta_002(gated_client):
    """Given an unknown job id, when GET /jobs/{jobId} is called, then 404 RESOURCE_NOT_FOUND is returned."""
    client, _ = gated_client

    response = client.get("/api/v1/jobs/unknown-job-01")

    assert response.status_code == 404
    assert response.json() == {"code": "RESOURCE_NOT_FOUND", "message": "Resource not found"}


@pytest.mark.p0
@pytest.mark.test_id("RES_001")
def test_res_001():
    """Given a stage that fails without retry, when GET /jobs/{jobId}/result is called, then 409 JOB_FAILED names the stage."""
    fetch = _Gate(outcomes=[{"video_id": "v"}])
    transcribe = _Gate(outcomes=[StageFailure("model crashed", retryable=False)])
    for gate in (fetch, transcribe):
        gate.open.set()
    app = create_app(
        _settings(stage_weights={"fetch": 50, "transcribe": 50}, stage_max_attempts={"transcribe": 3}),
        executors={"fetch": fetch, "transcribe": transcribe},
    )
    with TestClient(app) as client:
        job_id = client.post("/api/v1/jobs", json={"source": "https://example/video1"}).json()["job_id"]
        assert _wait(client, job_id)["status"] == "failed"

        response = client.get(f"/api/v1/jobs/{job_id}/result")

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "JOB_FAILED"
    assert body["details"]["error"]["stage"] == "transcribe"
    assert transcribe.calls == 1


@pytest.mark.p0
@pytest.mark.test_id("RES_002")
def test_res_002():
    """Given a stage that fails twice with retryable errors, when the job finishes, then it completes after three attempts."""
    only = _Gate(
        outcomes=[
            StageFailure("busy", retryable=True),
            StageFailure("busy", retryable=True),
            {"text": "done"},
        ]
    )
    only.open.set()
    app = create_app(
        _settings(stage_weights={"transcribe": 100}, stage_max_attempts={"transcribe": 3}),
        executors={"transcribe": only},
    )
    with TestClient(app) as client:
        job_id = client.post("/api/v1/jobs", json={"source": "https://example/video1"}).json()["job_id"]
        assert _wait(client, job_id)["status"] == "completed"

        result = client.get(f"/api/v1/jobs/{job_id}/result")
        stored = asyncio.run(app.state.store.get(job_id))

    assert result.status_code == 200
    assert result.json()["stage_results"] == {"transcribe": {"text": "done"}}
    assert stored.attempts == 3
    assert stored.error is None


@pytest.mark.p0
@pytest.mark.test_id("CAN_001")
def test_can_001(gated_client):
    """Given a running job, when POST /jobs/{jobId}/cancel is called, then 202 is returned and the job ends cancelled at the next boundary."""
    client, gates = gated_client
    client.post("/api/v1/jobs", json={"source": "https://example/video1", "job_id": "contract-job-03"})
    assert gates["fetch"].entered.wait(timeout=5)

    response = client.post("/api/v1/jobs/contract-job-03/cancel")
    assert response.status_code == 202
    assert response.json()["cancellation_applied"] is False

    gates["fetch"].open.set()
    final = _wait(client, "contract-job-03")

    assert final["status"] == "cancelled"
    assert final["progress"] == 30
    assert gates["extract"].calls == 0


@pytest.mark.p0
@pytest.mark.test_id("CAN_002")
def test_can_002(gated_client):
    """Given a finished job, when POST /jobs/{jobId}/cancel is called, then 409 JOB_NOT_CANCELLABLE is returned."""
    client, gates = gated_client
    for gate in gates.values():
        gate.open.set()
    job_id = client.post("/api/v1/jobs", json={"source": "https://example/video1"}).json()["job_id"]
    assert _wait(client, job_id)["status"] == "completed"

    response = client.post(f"/api/v1/jobs/{job_id}/cancel")

    assert response.status_code == 409
    assert response.json()["code"] == "JOB_NOT_CANCELLABLE"


@pytest.mark.p0
@pytest.mark.test_id("LST_001")
def test_lst_001(gated_client):
    """Given jobs in different states, when GET /jobs?status= is called, then only matching jobs are listed."""
    client, gates = gated_client
    client.post("/api/v1/jobs", json={"source": "https://example/video1", "job_id": "contract-job-04"})
    assert gates["fetch"].entered.wait(timeout=5)

    running = client.get("/api/v1/jobs?status=running").json()
    completed = client.get("/api/v1/jobs?status=completed").json()

    assert [item["job_id"] for item in running["items"]] == ["contract-job-04"]
    assert running["total"] == 1
    assert completed["items"] == []
    assert completed["total"] == 0
