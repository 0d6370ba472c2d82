"""Capability matching between a compiled plan and the engine registry."""

import logging
from typing import FrozenSet, List, Optional

from .models import Capability, EngineEntry, ExecutionPlan
from .registry import EngineRegistry, get_registry

logger = logging.getLogger(__name__)


def required_capabilities(plan: ExecutionPlan) -> FrozenSet[Capability]:
    return plan.required_capabilities


def missing_capabilities(plan: ExecutionPlan, engine: EngineEntry) -> FrozenSet[Capability]:
    return plan.required_capabilities - engine.capabilities


def is_compatible(plan: ExecutionPlan, engine: EngineEntry) -> bool:
    return (
        engine.available
        and plan.required_capabilities <= engine.capabilities
        and plan.max_segment_duration <= engine.max_duration_sec
    )


def get_compatible_engines(
    plan: ExecutionPlan, registry: Optional[EngineRegistry] = None
) -> List[EngineEntry]:
    """
    Every available engine that covers the plan's capabilities and can take
    its longest segment, in registry order. An empty list is a normal answer.
    """
    if registry is None:
        registry = get_registry()
    engines = registry.snapshot()
    compatible = [e for e in engines if is_compatible(plan, e)]
    logger.debug(
        "Plan %s needs %s: %d/%d engines compatible",
        plan.plan_id,
        sorted(c.value for c in plan.required_capabilities),
        len(compatible),
        len(engines),
    )
    return compatible
