# renderq/worker.py
import logging
import os
import time
import uuid
from multiprocessing import Process
from typing import List, Optional

from pydantic import ValidationError

from . import storage
from .adapters import AdapterRegistry, invoke_with_timeout, load_adapters_file
from .config import Settings, load_settings
from .errors import EngineError, InvalidTransitionError
from .models import ExecutionPlan, Job
from .stats import SuccessTracker, get_success_tracker

logger = logging.getLogger(__name__)


def load_worker_adapters(settings: Settings) -> AdapterRegistry:
    if settings.adapters_path:
        return load_adapters_file(settings.adapters_path)
    logger.warning("No adapters_path configured; every claimed job will fail")
    return AdapterRegistry()


def process_job(
    job: Job,
    adapters: AdapterRegistry,
    settings: Settings,
    stats: Optional[SuccessTracker] = None,
) -> Job:
    """
    Run one claimed job against its engine:
      - output produced   -> completed
      - work accepted     -> stays processing with the external job id
      - error / timeout   -> failed attempt (retry with backoff, or terminal)
    """
    if stats is None:
        stats = get_success_tracker()
    try:
        plan = ExecutionPlan.model_validate(job.payload.get("plan") or {})
        adapter = adapters.get(job.engine_id)
        outcome = invoke_with_timeout(job.engine_id, adapter, plan, settings.engine_timeout_sec)
    except (EngineError, ValidationError) as e:
        stats.record(job.engine_id, False)
        error = str(e)
        outcome = None

    try:
        if outcome is None:
            return storage.fail_job(
                job.id,
                error,
                backoff_base=settings.backoff_base,
                backoff_max=settings.backoff_max_sec,
            )
        if outcome.output_ref:
            stats.record(job.engine_id, True)
            return storage.complete_job(job.id, {"output_ref": outcome.output_ref, "source": "invoke"})
        logger.info("Job %s accepted by %s as %s", job.id, job.engine_id, outcome.external_job_id)
        return storage.set_external_job_id(job.id, outcome.external_job_id)
    except InvalidTransitionError as e:
        # the stuck-job sweep of another worker moved it meanwhile
        logger.warning("Job %s changed under worker: %s", job.id, e)
        return storage.get_job(job.id)


def poll_external(adapters: AdapterRegistry, settings: Settings, stats: Optional[SuccessTracker] = None) -> List[Job]:
    """Ask poll-capable adapters about jobs waiting on external completion."""
    if stats is None:
        stats = get_success_tracker()
    changed = []
    for job in storage.list_processing_external():
        if job.engine_id not in adapters:
            continue
        poll = getattr(adapters.get(job.engine_id), "poll", None)
        if poll is None:
            continue
        try:
            outcome = poll(job.external_job_id)
        except Exception:
            logger.exception("Polling %s for job %s failed", job.engine_id, job.id)
            continue
        if outcome is None:
            continue
        try:
            if outcome.success and outcome.output_ref:
                changed.append(storage.complete_job(job.id, {"output_ref": outcome.output_ref, "source": "poll"}))
                stats.record(job.engine_id, True)
            elif not outcome.success:
                changed.append(
                    storage.fail_job(
                        job.id,
                        outcome.error or "engine reported failure",
                        backoff_base=settings.backoff_base,
                        backoff_max=settings.backoff_max_sec,
                    )
                )
                stats.record(job.engine_id, False)
        except InvalidTransitionError:
            # a callback got there first
            continue
    return changed


def run_once(
    worker_id: str,
    adapters: AdapterRegistry,
    settings: Optional[Settings] = None,
    stats: Optional[SuccessTracker] = None,
) -> Optional[Job]:
    """One worker iteration: sweep stuck jobs, then claim and process one job."""
    settings = settings or load_settings()
    for job in storage.recover_stuck(settings.stuck_threshold_sec):
        logger.warning("Recovered stuck job %s -> %s", job.id, job.status.value)
    job = storage.claim_next(worker_id)
    if not job:
        return None
    return process_job(job, adapters, settings, stats)


def worker_loop(worker_id: str, adapters: Optional[AdapterRegistry] = None):
    """
    Single worker process loop:
      - respects global 'shutdown' flag
      - claims one job at a time, highest priority first
      - polls engines for externally running jobs
      - always deregisters itself on exit
    """
    pid = os.getpid()
    storage.register_worker(worker_id, pid)
    settings = load_settings()
    stats = get_success_tracker(settings.success_window)
    if adapters is None:
        adapters = load_worker_adapters(settings)
    logger.info("Worker %s (pid %d) started", worker_id, pid)

    try:
        while True:
            if storage.config_get("shutdown", "false") == "true":
                break
            job = run_once(worker_id, adapters, settings, stats)
            poll_external(adapters, settings, stats)
            if not job:
                time.sleep(settings.poll_interval)
    except KeyboardInterrupt:
        # quiet exit on Ctrl+C
        pass
    finally:
        storage.stop_worker_record(worker_id)
        logger.info("Worker %s stopped", worker_id)


def start_workers(count: int):
    """
    Spawn N workers and join them. If Ctrl+C is pressed in the parent,
    set shutdown=true so children finish their current job and exit cleanly.
    """
    procs = []
    for _ in range(count):
        wid = f"w-{uuid.uuid4().hex[:8]}"
        p = Process(target=worker_loop, args=(wid,), daemon=False)
        p.start()
        procs.append(p)

    try:
        for p in procs:
            p.join()
    except KeyboardInterrupt:
        # parent interrupted -> request graceful stop for all workers
        storage.config_set("shutdown", "true")
        for p in procs:
            p.join()
