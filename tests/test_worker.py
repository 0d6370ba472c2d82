import pytest

from renderq import storage
from renderq.adapters import AdapterRegistry, CallableAdapter
from renderq.config import load_settings
from renderq.dispatcher import route_execution
from renderq.models import Capability, JobStatus, RouteRequest
from renderq.registry import EngineRegistry
from renderq.stats import StoredSuccessTracker
from renderq.worker import poll_external, process_job, run_once, worker_loop
from tests.conftest import make_engine, make_plan, make_segment

PLAN = {"plan_id": "p-1", "timeline": [{"segment_id": "s1", "source_ref": "a.mp4", "start_sec": 0, "end_sec": 4}]}


@pytest.fixture
def settings():
    return load_settings().model_copy(update={"engine_timeout_sec": 2.0})


def claimed_job(engine_id="gen"):
    storage.enqueue_job(engine_id, payload={"plan": PLAN})
    return storage.claim_next("w1")


def adapter_returning(reply, poll_reply=None):
    return CallableAdapter(lambda plan, timeout: reply, poll_fn=lambda ext_id: poll_reply)


def test_process_job_completes_on_output(settings, stats):
    adapters = AdapterRegistry({"gen": adapter_returning({"success": True, "output_ref": "s3://p-1.mp4"})})
    job = process_job(claimed_job(), adapters, settings, stats)
    assert job.status == JobStatus.COMPLETED
    assert job.callback_data == {"output_ref": "s3://p-1.mp4", "source": "invoke"}
    assert stats.rate("gen") == 1.0


def test_process_job_keeps_accepted_work_processing(settings, stats):
    adapters = AdapterRegistry({"gen": adapter_returning({"success": True, "external_job_id": "ext-5"})})
    job = process_job(claimed_job(), adapters, settings, stats)
    assert job.status == JobStatus.PROCESSING
    assert job.external_job_id == "ext-5"
    assert stats.rate("gen") is None


def test_process_job_failure_schedules_retry(settings, stats):
    adapters = AdapterRegistry({"gen": adapter_returning({"success": False, "error": "rate limited"})})
    job = process_job(claimed_job(), adapters, settings, stats)
    assert job.status == JobStatus.QUEUED
    assert "rate limited" in job.error_message
    assert stats.rate("gen") == 0.0


def test_process_job_without_adapter_fails_attempt(settings, stats):
    job = process_job(claimed_job("nobody"), AdapterRegistry(), settings, stats)
    assert job.status == JobStatus.QUEUED
    assert "no adapter" in job.error_message


def test_process_job_with_bad_payload(settings, stats):
    storage.enqueue_job("gen", payload={"plan": {"timeline": "nope"}})
    job = storage.claim_next("w1")
    adapters = AdapterRegistry({"gen": adapter_returning({"success": True, "output_ref": "x"})})
    assert process_job(job, adapters, settings, stats).status == JobStatus.QUEUED


def test_run_once(settings, stats):
    adapters = AdapterRegistry({"gen": adapter_returning({"success": True, "output_ref": "out.mp4"})})
    assert run_once("w1", adapters, settings, stats) is None
    storage.enqueue_job("gen", payload={"plan": PLAN})
    assert run_once("w1", adapters, settings, stats).status == JobStatus.COMPLETED


def _waiting_job():
    job = claimed_job()
    return storage.set_external_job_id(job.id, "ext-1")


def test_poll_completes_job(settings, stats):
    job = _waiting_job()
    adapters = AdapterRegistry(
        {"gen": adapter_returning({}, poll_reply={"success": True, "output_ref": "done.mp4", "external_job_id": "ext-1"})}
    )
    changed = poll_external(adapters, settings, stats)
    assert [j.id for j in changed] == [job.id]
    assert storage.get_job(job.id).status == JobStatus.COMPLETED


def test_poll_with_no_news_changes_nothing(settings, stats):
    job = _waiting_job()
    adapters = AdapterRegistry({"gen": adapter_returning({}, poll_reply=None)})
    assert poll_external(adapters, settings, stats) == []
    assert storage.get_job(job.id).status == JobStatus.PROCESSING


def test_poll_error_is_skipped(settings, stats):
    job = _waiting_job()

    def explode(ext_id):
        raise ConnectionError("engine api down")

    adapters = AdapterRegistry({"gen": CallableAdapter(lambda p, t: {}, poll_fn=explode)})
    assert poll_external(adapters, settings, stats) == []
    assert storage.get_job(job.id).status == JobStatus.PROCESSING


def test_worker_loop_honours_shutdown():
    storage.config_set("shutdown", "true")
    worker_loop("w-test", AdapterRegistry())
    assert storage.list_workers() == []


def test_worker_failure_reorders_later_routes(settings):
    registry = EngineRegistry(
        [
            make_engine("flaky", {Capability.TRANSCODE}, priority=0.9),
            make_engine("steady", {Capability.TRANSCODE}, priority=0.9),
        ]
    )
    failing = AdapterRegistry({"flaky": adapter_returning({"success": False, "error": "render crashed"})})
    process_job(claimed_job("flaky"), failing, settings)

    healthy = AdapterRegistry(
        {
            "flaky": adapter_returning({"success": True, "output_ref": "f.mp4"}),
            "steady": adapter_returning({"success": True, "output_ref": "s.mp4"}),
        }
    )
    result = route_execution(
        RouteRequest(plan=make_plan(make_segment("s1", {Capability.TRANSCODE}))),
        registry=registry,
        adapters=healthy,
        stats=StoredSuccessTracker(window=settings.success_window),
    )
    assert result.attempted_engines == ["steady"]


def test_poll_failure_schedules_retry(settings, stats):
    job = _waiting_job()
    adapters = AdapterRegistry({"gen": adapter_returning({}, poll_reply={"success": False, "error": "moderation rejected"})})

    (changed,) = poll_external(adapters, settings, stats)
    assert changed.id == job.id
    assert changed.status == JobStatus.QUEUED
    assert changed.error_message == "moderation rejected"
    assert changed.external_job_id is None
    assert changed.next_run_at > changed.updated_at
    assert stats.rate("gen") == 0.0


def test_poll_failure_on_last_attempt_is_terminal(settings, stats):
    job = storage.enqueue_job("gen", payload={"plan": PLAN}, max_attempts=1)
    storage.claim_next("w1")
    storage.set_external_job_id(job.id, "ext-last")
    adapters = AdapterRegistry({"gen": adapter_returning({}, poll_reply={"success": False, "error": "gave up"})})

    (changed,) = poll_external(adapters, settings, stats)
    assert changed.status == JobStatus.FAILED
    assert changed.attempts == changed.max_attempts == 1
    assert changed.error_message == "gave up"
    assert storage.claim_next("w1") is None
