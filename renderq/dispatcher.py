"""
Execution router.

Takes a compiled plan, finds the engines that can render it, ranks them and
tries them one at a time until one succeeds. Asynchronous engines are not
invoked here: their work is handed to the job queue and the caller gets the
job id back.

Guarantees:
- Never raises to the caller; every outcome is a RouterResult
- `failed` only for input problems found before any engine is tried
- Engine-side failures end in `partial_success` with the plan, blueprint
  and analysis preserved in the artifacts
- Each engine is tried at most once per call; retries belong to the queue
"""

import logging
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from . import storage
from .adapters import AdapterRegistry, invoke_with_timeout
from .config import load_settings
from .errors import DispatchCancelled, EngineError, EngineInvocationError, QueueError
from .events import EventSink, fan_out, make_event
from .matcher import is_compatible
from .models import (
    EngineEntry,
    RouteRequest,
    RouterPhase,
    RouterResult,
    RouterStatus,
)
from .registry import EngineRegistry, get_registry
from .scorer import score_engines
from .stats import SuccessTracker, get_success_tracker
from .utils import new_id

logger = logging.getLogger(__name__)

NO_COMPATIBLE_ENGINE = "no compatible engine"
NO_ENGINE_WITHIN_CONSTRAINTS = "no engine within constraints"
ALL_ENGINES_FAILED = "all engines failed"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal router error"

_PRESERVED_MESSAGE = (
    "Your creative plan, blueprint and analysis have been preserved for export, "
    "manual editing or a later retry."
)


class Dispatcher:
    def __init__(
        self,
        registry: Optional[EngineRegistry] = None,
        adapters: Optional[AdapterRegistry] = None,
        stats: Optional[SuccessTracker] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.registry = registry if registry is not None else get_registry()
        self.adapters = adapters if adapters is not None else AdapterRegistry()
        self.stats = stats if stats is not None else get_success_tracker()
        self.timeout = float(timeout if timeout is not None else load_settings().engine_timeout_sec)
        self.max_attempts = max_attempts

    def route(
        self,
        request: Union[RouteRequest, Dict[str, Any]],
        emit_event: Optional[EventSink] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RouterResult:
        route_id = new_id("route")
        emit = fan_out(emit_event) if emit_event is not None else fan_out()
        try:
            return self._route(route_id, request, emit, cancel)
        except Exception as e:
            logger.exception("Route %s crashed", route_id)
            preserved = request if isinstance(request, RouteRequest) else None
            emit(make_event(route_id, RouterPhase.PARTIAL_SUCCESS, f"{INTERNAL_ERROR}: {e}"))
            return RouterResult(
                status=RouterStatus.PARTIAL_SUCCESS,
                job_id=route_id,
                artifacts=_artifacts(preserved),
                reason=INTERNAL_ERROR,
                human_message=f"An unexpected error interrupted rendering. {_PRESERVED_MESSAGE}",
            )

    # -----------------------------
    # Steps
    # -----------------------------
    def _route(self, route_id: str, raw, emit: EventSink, cancel: Optional[threading.Event]) -> RouterResult:
        request = self._validate(route_id, raw, emit)
        if isinstance(request, RouterResult):
            return request

        plan = request.plan
        required = sorted(c.value for c in plan.required_capabilities)
        emit(make_event(route_id, RouterPhase.ROUTE_STARTED, f"plan {plan.plan_id}", required=required))

        snapshot = self.registry.snapshot()
        compatible = [e for e in snapshot if is_compatible(plan, e)]
        if not compatible:
            emit(make_event(route_id, RouterPhase.NO_COMPATIBLE_ENGINE, f"no engine offers {required}", required=required))
            return RouterResult(
                status=RouterStatus.FAILED,
                job_id=route_id,
                artifacts=_artifacts(request),
                reason=NO_COMPATIBLE_ENGINE,
                human_message=(
                    "No engine can render this plan "
                    f"(needs {', '.join(required) or 'nothing'}, longest segment {plan.max_segment_duration:g}s)."
                ),
            )

        candidates = self._order(request, compatible)
        if not candidates:
            emit(make_event(route_id, RouterPhase.PARTIAL_SUCCESS, NO_ENGINE_WITHIN_CONSTRAINTS))
            return self._partial(
                route_id,
                request,
                [],
                NO_ENGINE_WITHIN_CONSTRAINTS,
                f"No compatible engine fits the requested cost or location limits. {_PRESERVED_MESSAGE}",
            )

        attempted: List[str] = []
        for position, engine in enumerate(candidates, start=1):
            if cancel is not None and cancel.is_set():
                return self._cancelled(route_id, request, attempted, emit, None)
            attempted.append(engine.id)
            emit(
                make_event(
                    route_id,
                    RouterPhase.DISPATCH_ATTEMPT,
                    f"attempt {position}/{len(candidates)}",
                    engine_id=engine.id,
                    position=position,
                )
            )
            try:
                if engine.async_completion:
                    return self._hand_off(route_id, request, engine, attempted, emit)
                return self._run(route_id, request, engine, attempted, emit, cancel)
            except DispatchCancelled:
                return self._cancelled(route_id, request, attempted, emit, engine.id)
            except EngineError as e:
                self.stats.record(engine.id, False)
                emit(make_event(route_id, RouterPhase.DISPATCH_FAILED, str(e), engine_id=engine.id, error=type(e).__name__))
            except (QueueError, sqlite3.Error) as e:
                emit(make_event(route_id, RouterPhase.DISPATCH_FAILED, f"enqueue failed: {e}", engine_id=engine.id, error=type(e).__name__))

        emit(make_event(route_id, RouterPhase.PARTIAL_SUCCESS, ALL_ENGINES_FAILED, attempted=list(attempted)))
        return self._partial(
            route_id,
            request,
            attempted,
            ALL_ENGINES_FAILED,
            f"None of the {len(attempted)} engine(s) tried could render the video. {_PRESERVED_MESSAGE}",
        )

    def _validate(self, route_id: str, raw, emit: EventSink):
        if isinstance(raw, RouteRequest):
            request = raw
        elif isinstance(raw, dict):
            try:
                request = RouteRequest.model_validate(raw)
            except ValidationError as e:
                first = e.errors()[0]
                where = ".".join(str(p) for p in first["loc"])
                return self._reject(route_id, emit, f"invalid request: {where}: {first['msg']}")
        else:
            return self._reject(route_id, emit, f"invalid request: expected RouteRequest, got {type(raw).__name__}")

        if not request.plan.timeline:
            return self._reject(route_id, emit, "empty plan", request)
        return request

    def _reject(self, route_id: str, emit: EventSink, reason: str, request: Optional[RouteRequest] = None) -> RouterResult:
        emit(make_event(route_id, RouterPhase.ROUTE_REJECTED, reason))
        return RouterResult(
            status=RouterStatus.FAILED,
            job_id=route_id,
            artifacts=_artifacts(request),
            reason=reason,
            human_message=f"The render request was rejected: {reason}.",
        )

    def _order(self, request: RouteRequest, compatible: List[EngineEntry]) -> List[EngineEntry]:
        ranked = score_engines(compatible, request.constraints(), self.stats)
        preferred_id = request.preferred_engine_id
        if not preferred_id:
            return ranked
        preferred = next((e for e in compatible if e.id == preferred_id), None)
        if preferred is None:
            logger.info("Preferred engine %s is not compatible with plan %s", preferred_id, request.plan.plan_id)
            return ranked
        return [preferred] + [e for e in ranked if e.id != preferred.id]

    def _run(self, route_id, request, engine, attempted, emit, cancel) -> RouterResult:
        adapter = self.adapters.get(engine.id)
        outcome = invoke_with_timeout(engine.id, adapter, request.plan, self.timeout, cancel=cancel)
        if not outcome.output_ref:
            raise EngineInvocationError(engine.id, "synchronous engine returned no output")
        self.stats.record(engine.id, True)
        emit(make_event(route_id, RouterPhase.DISPATCH_RESULT, outcome.output_ref, engine_id=engine.id, output_ref=outcome.output_ref))
        emit(make_event(route_id, RouterPhase.ROUTE_COMPLETED, f"rendered by {engine.name}", engine_id=engine.id))
        artifacts = _artifacts(request)
        artifacts["output_ref"] = outcome.output_ref
        return RouterResult(
            status=RouterStatus.SUCCESS,
            job_id=route_id,
            attempted_engines=list(attempted),
            artifacts=artifacts,
            engine_id=engine.id,
            human_message=f"Video rendered by {engine.name}.",
        )

    def _hand_off(self, route_id, request, engine, attempted, emit) -> RouterResult:
        job = storage.enqueue_job(
            engine.id,
            payload={"plan": request.plan.model_dump(mode="json"), "route_id": route_id},
            job_type=request.job_type,
            priority=request.priority,
            max_attempts=self.max_attempts,
        )
        emit(make_event(route_id, RouterPhase.JOB_ENQUEUED, f"job {job.id}", engine_id=engine.id, job_id=job.id))
        emit(make_event(route_id, RouterPhase.ROUTE_COMPLETED, f"queued for {engine.name}", engine_id=engine.id))
        artifacts = _artifacts(request)
        artifacts["job_id"] = job.id
        artifacts["job_status"] = job.status.value
        return RouterResult(
            status=RouterStatus.SUCCESS,
            job_id=job.id,
            attempted_engines=list(attempted),
            artifacts=artifacts,
            engine_id=engine.id,
            human_message=f"Queued for generation by {engine.name}; track job {job.id} for completion.",
        )

    def _cancelled(self, route_id, request, attempted, emit, engine_id) -> RouterResult:
        emit(make_event(route_id, RouterPhase.DISPATCH_CANCELLED, "route cancelled by caller", engine_id=engine_id))
        return self._partial(
            route_id,
            request,
            attempted,
            CANCELLED,
            f"Rendering was cancelled. {_PRESERVED_MESSAGE}",
        )

    def _partial(self, route_id, request, attempted, reason, message) -> RouterResult:
        return RouterResult(
            status=RouterStatus.PARTIAL_SUCCESS,
            job_id=route_id,
            attempted_engines=list(attempted),
            artifacts=_artifacts(request),
            reason=reason,
            human_message=message,
        )


def _artifacts(request: Optional[RouteRequest]) -> Dict[str, Any]:
    if request is None:
        return {}
    return {
        "execution_plan": request.plan,
        "blueprint": request.blueprint,
        "analysis": request.analysis,
    }


def route_execution(
    request: Union[RouteRequest, Dict[str, Any]],
    emit_event: Optional[EventSink] = None,
    *,
    registry: Optional[EngineRegistry] = None,
    adapters: Optional[AdapterRegistry] = None,
    stats: Optional[SuccessTracker] = None,
    timeout: Optional[float] = None,
    max_attempts: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> RouterResult:
    dispatcher = Dispatcher(
        registry=registry,
        adapters=adapters,
        stats=stats,
        timeout=timeout,
        max_attempts=max_attempts,
    )
    return dispatcher.route(request, emit_event, cancel=cancel)
