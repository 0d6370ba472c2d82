import threading
from datetime import datetime, timedelta, timezone

import pytest

from renderq import storage
from renderq.errors import InvalidTransitionError, JobNotFoundError, QueueFullError
from renderq.models import JobStatus

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def test_enqueue_defaults():
    job = storage.enqueue_job("runway-gen3", payload={"plan": {"plan_id": "p"}})
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.payload == {"plan": {"plan_id": "p"}}
    assert job.id.startswith("job_")


def test_priority_then_fifo():
    ids = [storage.enqueue_job("e", priority=p, now=at(i)).id for i, p in enumerate([5, 1, 5, 3])]
    claimed = [storage.claim_next("w1", now=at(10)).id for _ in range(4)]
    assert claimed == [ids[0], ids[2], ids[3], ids[1]]
    assert storage.claim_next("w1", now=at(10)) is None


def test_claim_sets_processing_fields():
    job = storage.enqueue_job("e", now=at(0))
    claimed = storage.claim_next("w-7", now=at(1))
    assert claimed.id == job.id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.worker_id == "w-7"
    assert claimed.started_at == at(1)


def test_failed_attempt_backs_off():
    job = storage.enqueue_job("e", now=at(0))
    storage.claim_next("w", now=at(0))
    retried = storage.fail_job(job.id, "timeout", now=at(0), backoff_base=2.0)

    assert retried.status == JobStatus.QUEUED
    assert retried.error_message == "timeout"
    assert retried.next_run_at == at(2)
    assert storage.claim_next("w", now=at(1.9)) is None
    assert storage.claim_next("w", now=at(2)).attempts == 2


def test_last_attempt_failure_is_terminal():
    job = storage.enqueue_job("e", max_attempts=2, now=at(0))
    storage.claim_next("w", now=at(0))
    storage.fail_job(job.id, "first", now=at(0))
    storage.claim_next("w", now=at(100))
    final = storage.fail_job(job.id, "second", now=at(100))

    assert final.status == JobStatus.FAILED
    assert final.attempts == 2
    assert final.error_message == "second"
    assert final.completed_at == at(100)
    assert storage.claim_next("w", now=at(10_000)) is None


def test_terminal_jobs_do_not_move():
    job = storage.enqueue_job("e")
    storage.claim_next("w")
    storage.complete_job(job.id, {"output_ref": "out.mp4"})

    with pytest.raises(InvalidTransitionError):
        storage.fail_job(job.id, "late failure")
    with pytest.raises(InvalidTransitionError):
        storage.complete_job(job.id)
    with pytest.raises(InvalidTransitionError):
        storage.update_job(job.id, {"priority": 9})
    assert storage.claim(job.id, "w2") is None
    assert storage.get_job(job.id).status == JobStatus.COMPLETED


def test_complete_requires_processing():
    job = storage.enqueue_job("e")
    with pytest.raises(InvalidTransitionError):
        storage.complete_job(job.id)


def test_complete_merges_callback_data():
    job = storage.enqueue_job("e")
    storage.claim_next("w")
    storage.update_job(job.id, {"callback_data": {"engine_status": "processing"}})
    done = storage.complete_job(job.id, {"output_ref": "s3://x.mp4"})
    assert done.callback_data == {"engine_status": "processing", "output_ref": "s3://x.mp4"}
    assert done.worker_id is None


def test_update_job_rejects_status_patch():
    job = storage.enqueue_job("e")
    with pytest.raises(ValueError):
        storage.update_job(job.id, {"status": "completed"})


def test_get_unknown_job():
    with pytest.raises(JobNotFoundError):
        storage.get_job("job_missing")


def test_backoff_delay():
    assert storage.backoff_delay(1) == 2.0
    assert storage.backoff_delay(3, base=3) == 27.0
    assert storage.backoff_delay(20, base=2, max_delay=3600) == 3600.0


def test_retry_clears_external_id():
    job = storage.enqueue_job("gen", now=at(0))
    storage.claim_next("w", now=at(0))
    storage.set_external_job_id(job.id, "ext-1")
    assert storage.find_by_external_id("ext-1").id == job.id

    retried = storage.fail_job(job.id, "engine failed", now=at(0))
    assert retried.external_job_id is None
    assert storage.find_by_external_id("ext-1") is None


def test_concurrent_claim_of_one_job_has_one_winner():
    job = storage.enqueue_job("e")
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def contend(n):
        barrier.wait()
        got = storage.claim(job.id, f"w{n}")
        with lock:
            results.append(got)

    threads = [threading.Thread(target=contend, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert storage.get_job(job.id).attempts == 1


def test_concurrent_claim_next_hands_out_each_job_once():
    ids = {storage.enqueue_job("e").id for _ in range(20)}
    claimed = []
    lock = threading.Lock()

    def drain(n):
        while True:
            job = storage.claim_next(f"w{n}")
            if job is None:
                return
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=drain, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(claimed) == sorted(ids)


def test_stuck_jobs_are_detected_and_retried():
    stale = storage.enqueue_job("e", now=at(0))
    fresh = storage.enqueue_job("e", now=at(0))
    storage.claim(stale.id, "w", now=at(0))
    storage.claim(fresh.id, "w", now=at(3000))

    stuck = storage.list_stuck(7200, now=at(7300))
    assert [j.id for j in stuck] == [stale.id]

    recovered = storage.recover_stuck(7200, now=at(7300))
    assert [j.id for j in recovered] == [stale.id]
    assert recovered[0].status == JobStatus.QUEUED
    assert "stuck" in recovered[0].error_message
    assert storage.get_job(fresh.id).status == JobStatus.PROCESSING


def test_queue_full():
    storage.enqueue_job("e", max_depth=2)
    storage.enqueue_job("e", max_depth=2)
    with pytest.raises(QueueFullError):
        storage.enqueue_job("e", max_depth=2)
    # processing jobs do not count towards depth
    storage.claim_next("w")
    storage.enqueue_job("e", max_depth=2)


def test_requeue_copy_of_failed_job():
    job = storage.enqueue_job("e", payload={"plan": {}}, priority=4, max_attempts=1)
    storage.claim_next("w")
    storage.fail_job(job.id, "boom")

    copy = storage.requeue_copy(job.id)
    assert copy.id != job.id
    assert copy.status == JobStatus.QUEUED
    assert copy.priority == 4
    assert copy.payload["retry_of"] == job.id
    assert storage.get_job(job.id).status == JobStatus.FAILED


def test_requeue_copy_refuses_live_jobs():
    job = storage.enqueue_job("e")
    with pytest.raises(InvalidTransitionError):
        storage.requeue_copy(job.id)


def test_queue_stats():
    storage.enqueue_job("e", now=at(0))
    storage.enqueue_job("e", now=at(10))
    storage.claim_next("w", now=at(20))

    stats = storage.queue_stats(now=at(60))
    assert stats["waiting"] == 1
    assert stats["active"] == 1
    assert stats["oldest_waiting_sec"] == 50
