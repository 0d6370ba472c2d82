"""
Inbound engine callbacks.

Generative engines report completion by calling back with their own job id.
A callback is a message that drives the persisted job record; nothing about
the dispatch that submitted the work has to be alive in memory when it arrives.
"""

import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from . import storage
from .errors import InvalidTransitionError, MalformedCallbackError, UnknownExternalJobError
from .models import CallbackPayload, CallbackStatus, Job
from .stats import SuccessTracker, get_success_tracker
from .utils import iso, utcnow

logger = logging.getLogger(__name__)


def parse_callback(raw: Any) -> CallbackPayload:
    if not isinstance(raw, Mapping):
        raise MalformedCallbackError(f"callback payload must be an object, got {type(raw).__name__}")
    try:
        return CallbackPayload.model_validate(dict(raw))
    except ValidationError as e:
        raise MalformedCallbackError(f"malformed callback: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


def ingest_callback(raw: Any, stats: Optional[SuccessTracker] = None) -> Optional[Job]:
    """
    Apply one callback to its job.

    Returns the updated job, or None when the job is already terminal and the
    callback was ignored. A malformed payload raises MalformedCallbackError
    and leaves every job untouched, so the job stays processing until the
    next poll or the stuck-job sweep.
    """
    if stats is None:
        stats = get_success_tracker()
    try:
        payload = parse_callback(raw)
    except MalformedCallbackError as e:
        logger.warning("Rejected callback: %s", e)
        raise

    job = storage.find_by_external_id(payload.external_job_id)
    if job is None:
        logger.warning("Callback for unknown external job %s", payload.external_job_id)
        raise UnknownExternalJobError(payload.external_job_id)

    if job.terminal:
        logger.info("Ignoring %s callback for %s job %s", payload.status.value, job.status.value, job.id)
        return None

    try:
        if payload.status == CallbackStatus.COMPLETED:
            job = storage.complete_job(
                job.id,
                {"output_ref": payload.output_ref, "metadata": payload.metadata, "source": "callback"},
            )
            stats.record(job.engine_id, True)
        elif payload.status == CallbackStatus.FAILED:
            job = storage.fail_job(job.id, payload.error_message or f"{job.engine_id} reported failure")
            stats.record(job.engine_id, False)
        else:
            data = dict(job.callback_data or {})
            data.update({"engine_status": "processing", "last_status_update": iso(utcnow())})
            if payload.metadata:
                data["metadata"] = payload.metadata
            job = storage.update_job(job.id, {"callback_data": data})
    except InvalidTransitionError as e:
        # lost a race with a worker, poll or sweep that already moved the job
        logger.info("Callback for %s arrived too late: %s", job.id, e)
        return None
    return job
