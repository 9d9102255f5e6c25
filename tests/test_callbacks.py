import pytest

from genworker import auth_middleware
from genworker.pipeline.callbacks import CallbackOutcome
from genworker.pipeline.models import CallbackPayload, JobStatus

from conftest import ACCOUNT, image_config, video_done


async def _awaiting_video_job(services):
    job = await services.jobs.submit_job(ACCOUNT, image_config(generate_video=True, video_resolution="720p"))
    await services.pipeline.wait_idle()
    job = services.store.get_job(job.id)
    assert job.status == JobStatus.AWAITING_CALLBACK
    return job


@pytest.mark.anyio
async def test_unknown_request_is_ignored(services):
    outcome = await services.receiver.handle("fal", video_done("req-unknown"))
    assert outcome == CallbackOutcome.IGNORED_UNKNOWN


@pytest.mark.anyio
async def test_duplicate_success_is_idempotent(services):
    job = await _awaiting_video_job(services)

    first = await services.receiver.handle("fal", video_done("req-1"))
    entries_after_first = services.ledger.entries(ACCOUNT, job_id=job.id)
    outputs_after_first = services.store.get_job(job.id).outputs

    second = await services.receiver.handle("fal", video_done("req-1"))

    assert first == CallbackOutcome.RESUMED
    assert second == CallbackOutcome.IGNORED_TERMINAL
    assert services.ledger.entries(ACCOUNT, job_id=job.id) == entries_after_first
    assert services.store.get_job(job.id).outputs == outputs_after_first


@pytest.mark.anyio
async def test_failure_refunds_the_failed_step_once(services):
    job = await _awaiting_video_job(services)
    failure = CallbackPayload(external_request_id="req-1", status="FAILED", error={"message": "render crashed"})

    outcome = await services.receiver.handle("fal", failure)
    repeat = await services.receiver.handle("fal", failure)
    job = services.store.get_job(job.id)

    assert outcome == CallbackOutcome.FAILED
    assert repeat == CallbackOutcome.IGNORED_TERMINAL
    assert job.status == JobStatus.FAILED
    assert "render crashed" in job.error
    assert job.credits_refunded == 5
    # 1 for the delivered image stays spent
    assert services.ledger.balance(ACCOUNT) == 99


@pytest.mark.anyio
async def test_callback_after_timeout_is_ignored(services):
    job = await _awaiting_video_job(services)
    await services.pipeline.fail(services.store.get_job(job.id), "timeout", failed_step=job.current_step)

    outcome = await services.receiver.handle("fal", video_done("req-1"))

    assert outcome == CallbackOutcome.IGNORED_TERMINAL
    assert services.store.get_job(job.id).error == "timeout"
    assert len(services.store.get_job(job.id).outputs) == 1


@pytest.mark.anyio
async def test_callback_route_accepts_provider_field_names(client, services):
    job = await _awaiting_video_job(services)

    resp = await client.post("/callbacks/fal", json={
        "request_id": "req-1",
        "status": "OK",
        "payload": {"video": {"url": "https://fal.test/render.mp4"}},
    })

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "outcome": "resumed"}
    assert services.store.get_job(job.id).status == JobStatus.COMPLETED


@pytest.mark.anyio
async def test_callback_route_unknown_request_still_200(client):
    resp = await client.post("/callbacks/fal", json={"externalRequestId": "nope", "status": "COMPLETED"})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored_unknown"


@pytest.mark.anyio
async def test_callback_route_rejects_bad_secret(client, monkeypatch):
    monkeypatch.setattr(auth_middleware, "CALLBACK_SECRET", "s3cret")

    denied = await client.post("/callbacks/fal?token=wrong", json={"externalRequestId": "x", "status": "COMPLETED"})
    allowed = await client.post(
        "/callbacks/fal",
        json={"externalRequestId": "x", "status": "COMPLETED"},
        headers={"X-Callback-Secret": "s3cret"},
    )

    assert denied.status_code == 401
    assert allowed.status_code == 200


@pytest.mark.anyio
async def test_callback_on_wrong_provider_route_is_ignored(services):
    job = await _awaiting_video_job(services)

    outcome = await services.receiver.handle("xai", video_done("req-1"))
    job = services.store.get_job(job.id)

    assert outcome == CallbackOutcome.IGNORED_UNKNOWN
    assert job.status == JobStatus.AWAITING_CALLBACK
    assert services.store.get_handle("req-1").resolved_at is None
    # The owning provider can still deliver
    assert await services.receiver.handle("fal", video_done("req-1")) == CallbackOutcome.RESUMED


@pytest.mark.anyio
async def test_progress_notice_does_not_fail_the_job(services):
    job = await _awaiting_video_job(services)
    progress = CallbackPayload(external_request_id="req-1", status="IN_PROGRESS")

    outcome = await services.receiver.handle("fal", progress)
    job = services.store.get_job(job.id)

    assert outcome == CallbackOutcome.IGNORED_PENDING
    assert job.status == JobStatus.AWAITING_CALLBACK
    assert job.credits_refunded == 0
    assert services.store.get_handle("req-1").resolved_at is None

    done = await services.receiver.handle("fal", video_done("req-1"))
    assert done == CallbackOutcome.RESUMED
    assert services.store.get_job(job.id).status == JobStatus.COMPLETED


@pytest.mark.parametrize("status, final, succeeded", [
    ("COMPLETED", True, True),
    ("ok", True, True),
    ("ERROR", True, False),
    ("FAILED", True, False),
    ("IN_QUEUE", False, False),
    ("IN_PROGRESS", False, False),
])
def test_payload_status_classification(status, final, succeeded):
    payload = CallbackPayload(external_request_id="req-1", status=status)
    assert payload.is_final is final
    assert payload.succeeded is succeeded
