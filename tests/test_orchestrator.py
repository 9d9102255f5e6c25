import pytest

from genworker.pipeline.errors import CapabilityError, InvalidJobState, PipelineError
from genworker.pipeline.gateway import Capability
from genworker.pipeline.models import (
    Identity,
    JobStatus,
    JobType,
    LedgerReason,
    PipelineStep,
)

from conftest import ACCOUNT, animation_config, image_config, training_config, training_done, video_done


async def _run(services, config, account_id=ACCOUNT):
    job = await services.jobs.submit_job(account_id, config)
    await services.pipeline.wait_idle()
    await services.pipeline.notifier.drain()
    return services.store.get_job(job.id)


def _net(services, job):
    return sum(e.amount for e in services.ledger.entries(job.account_id, job_id=job.id))


@pytest.mark.anyio
async def test_basic_image_job_completes_with_one_output(services, provider):
    job = await _run(services, image_config())

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.price == 1
    assert job.cost_accrued == 1
    assert len(job.outputs) == 1
    assert job.outputs[0].step == PipelineStep.BASE_GEN
    assert job.outputs[0].durable
    assert job.outputs[0].url.startswith("https://r2.test/")
    assert services.ledger.balance(ACCOUNT) == 99
    assert _net(services, job) == -1


@pytest.mark.anyio
async def test_skipped_steps_produce_nothing_and_cost_nothing(services, provider):
    job = await _run(services, image_config(clothes_url="https://cdn.test/dress.png"))

    assert job.charged_steps == [PipelineStep.BASE_GEN]
    assert {a.step for a in job.outputs} == {PipelineStep.BASE_GEN}
    assert job.completed_steps == job.steps
    assert provider.called(Capability.SEGMENT_CLOTHING) == []
    assert provider.called(Capability.UPSCALE) == []
    assert provider.called(Capability.RENDER_VIDEO) == []


@pytest.mark.anyio
async def test_base_gen_uses_identity_model_and_trigger_word(services, provider):
    job = await _run(services, image_config(aspect_ratio="9:16"))

    [request] = provider.called(Capability.GENERATE_IMAGE)
    assert request["loras"][0]["path"] == "https://r2.test/identities/ident-1.safetensors"
    assert request["image_size"] == "portrait_16_9"
    assert request["prompt"] == "luna_v3, on a rooftop at golden hour"
    assert job.effective_prompt == request["prompt"]


@pytest.mark.anyio
async def test_prompt_rewrite_is_used_when_requested(services, provider):
    job = await _run(services, image_config(use_prompt_rewrite=True))
    assert job.effective_prompt == "luna_v3 on a rooftop at golden hour, cinematic"


@pytest.mark.anyio
async def test_prompt_rewrite_failure_falls_back_to_user_prompt(services, provider):
    provider.failures[Capability.REWRITE_PROMPT] = CapabilityError("xai down", "xai")
    job = await _run(services, image_config(use_prompt_rewrite=True))

    assert job.status == JobStatus.COMPLETED
    assert job.effective_prompt == "luna_v3, on a rooftop at golden hour"


@pytest.mark.anyio
async def test_cloth_swap_and_upscale_chain(services, provider):
    config = image_config(change_clothes=True, clothes_url="https://cdn.test/dress.png", upscale_factor=4)
    job = await _run(services, config)

    assert job.status == JobStatus.COMPLETED
    assert [a.step for a in job.outputs] == [
        PipelineStep.BASE_GEN, PipelineStep.CLOTH_SWAP, PipelineStep.UPSCALE,
    ]
    [inpaint] = provider.called(Capability.INPAINT)
    assert inpaint["reference_image_url"] == "https://cdn.test/dress.png"
    assert inpaint["mask_url"] == "https://fal.test/mask.png"
    [upscale] = provider.called(Capability.UPSCALE)
    assert upscale["image_url"] == "https://fal.test/swapped.png"
    assert upscale["upscale_factor"] == 4
    assert _net(services, job) == -3


@pytest.mark.anyio
async def test_cloth_swap_failure_is_best_effort(services, provider):
    provider.failures[Capability.SEGMENT_CLOTHING] = CapabilityError("sam timeout", "fal")
    config = image_config(change_clothes=True, clothes_url="https://cdn.test/dress.png", upscale_factor=2)
    job = await _run(services, config)

    assert job.status == JobStatus.COMPLETED
    assert PipelineStep.CLOTH_SWAP not in job.charged_steps
    assert [a.step for a in job.outputs] == [PipelineStep.BASE_GEN, PipelineStep.UPSCALE]
    [upscale] = provider.called(Capability.UPSCALE)
    assert upscale["image_url"] == "https://fal.test/base.png"

    # Priced 3, used 2: the swap's share comes back
    assert job.price == 3
    assert job.cost_accrued == 2
    refunds = [e for e in services.ledger.entries(ACCOUNT, job_id=job.id) if e.amount > 0]
    assert [(e.amount, e.reason) for e in refunds] == [(1, LedgerReason.UNUSED_RESERVATION)]


@pytest.mark.anyio
async def test_critical_step_failure_fails_and_refunds(services, provider):
    provider.failures[Capability.UPSCALE] = CapabilityError("seedvr 500", "fal")
    job = await _run(services, image_config(upscale_factor=2))

    assert job.status == JobStatus.FAILED
    assert "seedvr 500" in job.error
    assert job.progress < 100
    # Base image was delivered and stays paid; the failed upscale is returned
    assert _net(services, job) == -1
    assert services.ledger.balance(ACCOUNT) == 99


@pytest.mark.anyio
async def test_identity_not_ready_fails_with_full_refund(services, store):
    store.save_identity(Identity(id="ident-training", account_id=ACCOUNT, status="training"))
    job = await _run(services, image_config(identity_id="ident-training"))

    assert job.status == JobStatus.FAILED
    assert "not ready" in job.error
    assert job.charged_steps == []
    assert _net(services, job) == 0


@pytest.mark.anyio
async def test_progress_never_decreases(services, store, monkeypatch):
    seen = []
    original = store.save_job

    def spy(job, expected_status=None):
        seen.append((job.status, job.progress))
        return original(job, expected_status)

    monkeypatch.setattr(store, "save_job", spy)
    await _run(services, image_config(change_clothes=True, clothes_url="https://cdn.test/x.png", upscale_factor=2))

    progress = [p for _, p in seen]
    assert progress == sorted(progress)
    assert all(status == JobStatus.COMPLETED for status, p in seen if p == 100)


@pytest.mark.anyio
async def test_video_step_suspends_then_resumes_on_callback(services, provider):
    job = await _run(services, image_config(generate_video=True, video_resolution="1080p"))

    assert job.status == JobStatus.AWAITING_CALLBACK
    assert job.current_step == PipelineStep.VIDEO_GEN
    assert job.progress == 85
    assert job.pending_handle.external_request_id == "req-1"
    assert job.callback_deadline is not None
    # VIDEO_PREP handed the provider a durable copy of the image
    [render] = provider.called(Capability.RENDER_VIDEO)
    assert render["image_url"].startswith("https://r2.test/")
    assert render["duration_seconds"] == 5

    outcome = await services.receiver.handle("fal", video_done("req-1"))
    await services.pipeline.notifier.drain()
    job = services.store.get_job(job.id)

    assert outcome.value == "resumed"
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert [a.kind for a in job.outputs] == ["image", "video"]
    assert all(a.durable for a in job.outputs)
    assert job.pending_handle is None
    assert _net(services, job) == -9


@pytest.mark.anyio
async def test_review_holds_job_until_approved(services):
    job = await _run(services, image_config(require_review=True))
    assert job.status == JobStatus.REVIEW
    assert job.progress == 95

    job = await services.jobs.approve_review(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100


@pytest.mark.anyio
async def test_rejected_review_fails_without_refund(services):
    job = await _run(services, image_config(require_review=True))
    job = await services.jobs.reject_review(job.id, "watermark visible")

    assert job.status == JobStatus.FAILED
    assert job.error.startswith("rejected_in_review")
    assert _net(services, job) == -1


@pytest.mark.anyio
async def test_training_job_readies_identity_and_generates_previews(services, store, provider):
    job = await _run(services, training_config(steps=1000))

    assert job.status == JobStatus.AWAITING_CALLBACK
    assert job.price == 75
    assert store.get_identity("ident-new").status == "training"
    [train] = provider.called(Capability.TRAIN_IDENTITY)
    assert train["trigger_phrase"] == "nova_v1"

    await services.receiver.handle("fal", training_done("req-1"))
    job = store.get_job(job.id)
    identity = store.get_identity("ident-new")

    assert job.status == JobStatus.COMPLETED
    assert identity.status == "ready"
    assert identity.model_url == "https://r2.test/identities/ident-new.safetensors"
    previews = [a for a in job.outputs if a.step == PipelineStep.REFERENCE_GEN]
    assert len(previews) == 4
    assert all(r["loras"][0]["path"] == identity.model_url for r in provider.called(Capability.GENERATE_IMAGE))


@pytest.mark.anyio
async def test_reference_preview_failures_do_not_fail_training(services, store, provider):
    provider.failures[Capability.GENERATE_IMAGE] = CapabilityError("nsfw filter", "fal")
    job = await _run(services, training_config())
    await services.receiver.handle("fal", training_done("req-1"))
    job = store.get_job(job.id)

    assert job.status == JobStatus.COMPLETED
    assert [a.kind for a in job.outputs] == ["model"]


@pytest.mark.anyio
async def test_failed_training_marks_identity_failed(services, store):
    job = await _run(services, training_config())
    failure = training_done("req-1").model_copy(update={"status": "FAILED", "error": "diverged"})
    await services.receiver.handle("fal", failure)

    assert store.get_job(job.id).status == JobStatus.FAILED
    assert store.get_identity("ident-new").status == "failed"
    assert services.ledger.balance(ACCOUNT) == 100


@pytest.mark.anyio
async def test_cancel_queued_job_refunds_everything(services):
    job = await services.jobs.submit_job(ACCOUNT, image_config(upscale_factor=2))
    cancelled = await services.jobs.cancel_job(ACCOUNT, job.id)
    await services.pipeline.wait_idle()

    assert cancelled.status == JobStatus.FAILED
    assert cancelled.error == "cancelled"
    assert services.store.get_job(job.id).status == JobStatus.FAILED
    assert services.ledger.balance(ACCOUNT) == 100


@pytest.mark.anyio
async def test_cancel_while_awaiting_callback_applies_when_step_resolves(services):
    job = await _run(services, image_config(generate_video=True, video_resolution="720p"))

    pending = await services.jobs.cancel_job(ACCOUNT, job.id)
    assert pending.status == JobStatus.AWAITING_CALLBACK
    assert pending.cancel_requested

    outcome = await services.receiver.handle("fal", video_done("req-1"))
    job = services.store.get_job(job.id)

    assert outcome.value == "failed"
    assert job.status == JobStatus.FAILED
    assert job.error == "cancelled"
    # Base image kept and paid for, video refunded
    assert _net(services, job) == -1


@pytest.mark.anyio
async def test_cancel_terminal_job_is_rejected(services):
    job = await _run(services, image_config())
    with pytest.raises(InvalidJobState):
        await services.jobs.cancel_job(ACCOUNT, job.id)


@pytest.mark.anyio
async def test_retry_creates_new_linked_job(services, provider):
    provider.failures[Capability.GENERATE_IMAGE] = CapabilityError("flaky", "fal")
    failed = await _run(services, image_config())
    assert failed.status == JobStatus.FAILED

    del provider.failures[Capability.GENERATE_IMAGE]
    retry = await services.jobs.retry_job(ACCOUNT, failed.id)
    await services.pipeline.wait_idle()
    retry = services.store.get_job(retry.id)

    assert retry.id != failed.id
    assert retry.retry_of == failed.id
    assert retry.retry_count == 1
    assert retry.status == JobStatus.COMPLETED
    assert services.store.get_job(failed.id).status == JobStatus.FAILED


@pytest.mark.anyio
async def test_retry_only_for_failed_jobs(services):
    job = await _run(services, image_config())
    with pytest.raises(InvalidJobState):
        await services.jobs.retry_job(ACCOUNT, job.id)


@pytest.mark.anyio
async def test_unknown_identity_rejected_before_charge(services):
    with pytest.raises(PipelineError) as exc:
        await services.jobs.submit_job(ACCOUNT, image_config(identity_id="nope"))
    assert exc.value.code == "identity_not_found"
    assert services.ledger.entries(ACCOUNT) == []


@pytest.mark.anyio
async def test_outcome_is_written_to_notification_feed(services, store):
    job = await _run(services, image_config())

    [notice] = store.notifications
    assert notice["account_id"] == ACCOUNT
    assert notice["type"] == "job_completed"
    assert notice["job"]["id"] == job.id


@pytest.mark.anyio
async def test_animation_morphs_asset_then_animates_it(services, provider):
    job = await _run(services, animation_config(resolution="1080p"))

    assert job.job_type == JobType.ANIMATION
    assert job.status == JobStatus.AWAITING_CALLBACK
    assert job.current_step == PipelineStep.VIDEO_GEN
    assert services.ledger.balance(ACCOUNT) == 75

    [morph] = provider.called(Capability.GENERATE_IMAGE)
    assert morph["image_url"] == "https://cdn.test/still.png"
    assert morph["strength"] == 0.65
    assert morph["loras"][0]["path"] == "https://r2.test/identities/ident-1.safetensors"
    assert morph["prompt"].startswith("luna_v3")

    [animate] = provider.called(Capability.ANIMATE_VIDEO)
    assert animate["video_url"] == "https://cdn.test/moves.mp4"
    assert animate["image_url"] == job.outputs[0].url
    assert job.outputs[0].durable
    assert animate["resolution"] == "1080p"
    assert animate["num_frames"] == 81
    assert not provider.called(Capability.RENDER_VIDEO)

    await services.receiver.handle("fal", video_done("req-1"))
    job = services.store.get_job(job.id)

    assert job.status == JobStatus.COMPLETED
    assert [a.kind for a in job.outputs] == ["image", "video"]
    assert job.cost_accrued == 25
    assert _net(services, job) == -25


@pytest.mark.anyio
async def test_failed_animation_refunds_everything(services):
    job = await _run(services, animation_config())
    failure = video_done("req-1").model_copy(update={"status": "FAILED", "error": "motion transfer failed"})

    await services.receiver.handle("fal", failure)
    job = services.store.get_job(job.id)

    assert job.status == JobStatus.FAILED
    assert job.credits_refunded == 10
    assert services.ledger.balance(ACCOUNT) == 100


@pytest.mark.anyio
async def test_animation_morph_failure_charges_nothing(services, provider):
    provider.failures[Capability.GENERATE_IMAGE] = CapabilityError("nsfw filter", "fal")
    job = await _run(services, animation_config())

    assert job.status == JobStatus.FAILED
    assert job.current_step == PipelineStep.BASE_GEN
    assert not provider.called(Capability.ANIMATE_VIDEO)
    assert services.ledger.balance(ACCOUNT) == 100
