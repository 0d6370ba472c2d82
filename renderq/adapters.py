"""
Engine adapters.

Every engine is driven through the same contract:

    invoke(plan, timeout) -> InvokeOutcome
    poll(external_job_id) -> InvokeOutcome | None      (optional)

An outcome either carries an output reference (work done), or an external
job id (work accepted, completion arrives by callback or poll), or an error.
Adapters are plain objects registered per engine id; there is no base class
to inherit from.
"""

import json
import logging
import os
import shlex
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import (
    AdapterNotFoundError,
    DispatchCancelled,
    EngineInvocationError,
    EngineTimeoutError,
    RegistryError,
)
from .executor import run_command
from .models import ExecutionPlan, InvokeOutcome

logger = logging.getLogger(__name__)

# how often a waiting dispatcher checks for cancellation
CANCEL_CHECK_SEC = 0.05


class EngineAdapter(Protocol):
    def invoke(self, plan: ExecutionPlan, timeout: float) -> InvokeOutcome: ...


class CallableAdapter:
    """Wraps a function `fn(plan, timeout)` returning an InvokeOutcome or a dict."""

    def __init__(self, fn: Callable[[ExecutionPlan, float], Any], poll_fn: Optional[Callable[[str], Any]] = None):
        self.fn = fn
        self.poll_fn = poll_fn

    def invoke(self, plan: ExecutionPlan, timeout: float) -> InvokeOutcome:
        return _as_outcome(self.fn(plan, timeout))

    def poll(self, external_job_id: str) -> Optional[InvokeOutcome]:
        if self.poll_fn is None:
            return None
        result = self.poll_fn(external_job_id)
        return None if result is None else _as_outcome(result)


class CommandAdapter:
    """
    Server-side media pipeline driven by a shell command template.

    Placeholders: {plan_id}, {inputs}, {output}, {duration}. The rendered
    output path is the outcome's output_ref.
    """

    def __init__(self, command: str, output: str = "{plan_id}.mp4"):
        self.command = command
        self.output = output

    def render(self, plan: ExecutionPlan) -> tuple:
        output = self.output.format(plan_id=plan.plan_id)
        inputs = " ".join(shlex.quote(s.source_ref) for s in plan.timeline)
        cmd = self.command.format(
            plan_id=plan.plan_id,
            inputs=inputs,
            output=shlex.quote(output),
            duration=f"{plan.total_duration:g}",
        )
        return cmd, output

    def invoke(self, plan: ExecutionPlan, timeout: float) -> InvokeOutcome:
        cmd, output = self.render(plan)
        logger.debug("Running %s", cmd)
        result = run_command(cmd, timeout=timeout)
        if result.returncode == 0:
            return InvokeOutcome(success=True, output_ref=output)
        # truncate error to keep job records small
        return InvokeOutcome(success=False, error=(result.stderr or f"exit code {result.returncode}")[:512])


class HttpJobAdapter:
    """
    Third-party generative API. `invoke` submits a job and returns its
    external id; the engine calls back (or is polled) when it finishes.

    Expected API:
      POST {base_url}/jobs            -> {"id": ..., "output_url"?: ...}
      GET  {base_url}/jobs/{id}       -> {"status": ..., "output_url"?, "error"?}
    """

    def __init__(
        self,
        base_url: str,
        api_key_env: Optional[str] = None,
        callback_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        poll_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key_env = api_key_env
        self.callback_url = callback_url
        self.transport = transport
        self.poll_timeout = poll_timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key_env:
            key = os.environ.get(self.api_key_env)
            if key:
                headers["Authorization"] = f"Bearer {key}"
            else:
                logger.warning("%s not set - calling %s unauthenticated", self.api_key_env, self.base_url)
        return headers

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=timeout, transport=self.transport)

    def invoke(self, plan: ExecutionPlan, timeout: float) -> InvokeOutcome:
        body: Dict[str, Any] = {"plan": plan.model_dump(mode="json")}
        if self.callback_url:
            body["callback_url"] = self.callback_url
        try:
            with self._client(timeout) as client:
                response = client.post("/jobs", json=body, headers=self._headers())
        except httpx.TimeoutException:
            return InvokeOutcome(success=False, error=f"request timed out after {timeout:g}s")
        except httpx.HTTPError as e:
            return InvokeOutcome(success=False, error=f"request error: {e}")

        if response.status_code >= 300:
            return InvokeOutcome(success=False, error=f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError:
            return InvokeOutcome(success=False, error="response is not JSON")
        if data.get("output_url"):
            return InvokeOutcome(success=True, output_ref=data["output_url"], external_job_id=data.get("id"))
        if not data.get("id"):
            return InvokeOutcome(success=False, error="response has no job id")
        return InvokeOutcome(success=True, external_job_id=str(data["id"]))

    def poll(self, external_job_id: str) -> Optional[InvokeOutcome]:
        try:
            with self._client(self.poll_timeout) as client:
                response = client.get(f"/jobs/{external_job_id}", headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Poll of %s/%s failed: %s", self.base_url, external_job_id, e)
            return None
        status = data.get("status")
        if status == "completed" and data.get("output_url"):
            return InvokeOutcome(success=True, output_ref=data["output_url"], external_job_id=external_job_id)
        if status == "failed":
            return InvokeOutcome(success=False, external_job_id=external_job_id, error=data.get("error") or "engine reported failure")
        return None


def _as_outcome(value: Any) -> InvokeOutcome:
    if isinstance(value, InvokeOutcome):
        return value
    return InvokeOutcome.model_validate(value)


class AdapterRegistry:
    def __init__(self, adapters: Optional[Mapping[str, EngineAdapter]] = None):
        self._adapters: Dict[str, EngineAdapter] = dict(adapters or {})

    def register(self, engine_id: str, adapter: EngineAdapter) -> None:
        self._adapters[engine_id] = adapter

    def get(self, engine_id: str) -> EngineAdapter:
        adapter = self._adapters.get(engine_id)
        if adapter is None:
            raise AdapterNotFoundError(engine_id)
        return adapter

    def __contains__(self, engine_id: str) -> bool:
        return engine_id in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)


def build_adapters(config: Mapping[str, Mapping[str, Any]]) -> AdapterRegistry:
    """
    Build adapters from configuration:

        {"ffmpeg-server": {"kind": "command", "command": "ffmpeg -i {inputs} {output}"},
         "runway-gen3":   {"kind": "http", "base_url": "https://...", "api_key_env": "RUNWAY_KEY"}}
    """
    registry = AdapterRegistry()
    for engine_id, cfg in config.items():
        options = dict(cfg)
        kind = options.pop("kind", None)
        try:
            if kind == "command":
                registry.register(engine_id, CommandAdapter(**options))
            elif kind == "http":
                registry.register(engine_id, HttpJobAdapter(**options))
            else:
                raise RegistryError(f"adapter {engine_id}: unknown kind {kind!r}")
        except TypeError as e:
            raise RegistryError(f"adapter {engine_id}: {e}") from e
    return registry


def load_adapters_file(path) -> AdapterRegistry:
    try:
        config = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise RegistryError(f"cannot read adapters file {path}: {e}") from e
    if not isinstance(config, dict):
        raise RegistryError(f"adapters file {path} must be a JSON object")
    return build_adapters(config)


# -----------------------------
# Bounded invocation
# -----------------------------
class _Invocation(threading.Thread):
    """
    One adapter call on its own daemon thread. A hung engine only ever holds
    its own thread, so it cannot delay calls to other engines.
    """

    def __init__(self, engine_id: str, adapter: EngineAdapter, plan: ExecutionPlan, timeout: float):
        super().__init__(name=f"renderq-engine-{engine_id}", daemon=True)
        self.adapter = adapter
        self.plan = plan
        self.timeout = timeout
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def run(self):
        try:
            self.result = self.adapter.invoke(self.plan, self.timeout)
        except Exception as e:
            self.error = e


def invoke_with_timeout(
    engine_id: str,
    adapter: EngineAdapter,
    plan: ExecutionPlan,
    timeout: float,
    cancel: Optional[threading.Event] = None,
) -> InvokeOutcome:
    """
    Run `adapter.invoke` with a deadline.

    Raises EngineTimeoutError, DispatchCancelled or EngineInvocationError;
    returns only outcomes that carry an output_ref or an external job id.
    A timed-out adapter thread is abandoned, not killed; adapters receive the
    same timeout so they can stop themselves.
    """
    call = _Invocation(engine_id, adapter, plan, timeout)
    call.start()
    deadline = time.monotonic() + timeout
    while call.is_alive():
        if cancel is not None and cancel.is_set():
            raise DispatchCancelled(f"cancelled while {engine_id} was running")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise EngineTimeoutError(engine_id, timeout)
        call.join(min(remaining, CANCEL_CHECK_SEC) if cancel is not None else remaining)

    if call.error is not None:
        raise EngineInvocationError(engine_id, f"{type(call.error).__name__}: {call.error}") from call.error
    try:
        outcome = _as_outcome(call.result)
    except ValidationError as e:
        raise EngineInvocationError(engine_id, f"malformed adapter output: {e.error_count()} error(s)") from e

    if not outcome.success:
        raise EngineInvocationError(engine_id, outcome.error or "engine reported failure")
    if not outcome.output_ref and not outcome.external_job_id:
        raise EngineInvocationError(engine_id, "engine returned neither output nor job id")
    return outcome
