"""
Error taxonomy for the router and the job queue.

Input errors end up as a `failed` RouterResult, engine errors are absorbed
per attempt by the dispatcher, queue errors are recoverable and retried up to
the job's max_attempts.
"""

from typing import Optional


class RenderqError(Exception):
    """Base class for every error raised inside renderq."""


# -----------------------------
# Input errors
# -----------------------------
class InputValidationError(RenderqError):
    """The caller handed us a request or plan we cannot route."""


class RegistryError(RenderqError):
    """Engine registry configuration is invalid."""


# -----------------------------
# Engine errors
# -----------------------------
class EngineError(RenderqError):
    def __init__(self, engine_id: str, message: str):
        self.engine_id = engine_id
        super().__init__(f"[{engine_id}] {message}")


class EngineInvocationError(EngineError):
    """Adapter raised, returned an error, or produced unusable output."""


class EngineTimeoutError(EngineError):
    def __init__(self, engine_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(engine_id, f"timed out after {timeout:g}s")


class AdapterNotFoundError(EngineError):
    def __init__(self, engine_id: str):
        super().__init__(engine_id, "no adapter registered")


class DispatchCancelled(RenderqError):
    """The caller cancelled a route call while an engine was running."""


# -----------------------------
# Queue errors
# -----------------------------
class QueueError(RenderqError):
    pass


class QueueFullError(QueueError):
    def __init__(self, depth: int):
        self.depth = depth
        super().__init__(f"queue is full ({depth} jobs waiting)")


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job not found: {job_id}")


class InvalidTransitionError(QueueError):
    def __init__(self, job_id: str, current: str, target: Optional[str] = None):
        self.job_id = job_id
        self.current = current
        self.target = target
        msg = f"job {job_id} is {current}"
        if target:
            msg += f", cannot move to {target}"
        super().__init__(msg)


class CallbackError(QueueError):
    pass


class MalformedCallbackError(CallbackError):
    pass


class UnknownExternalJobError(CallbackError):
    def __init__(self, external_job_id: str):
        self.external_job_id = external_job_id
        super().__init__(f"no job for external id {external_job_id}")
