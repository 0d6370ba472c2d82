"""
Pytest configuration and fixtures.
"""

import pytest

from renderq.models import (
    Capability,
    CostProfile,
    EngineEntry,
    ExecutionPlan,
    ProcessingLocation,
    TimelineSegment,
)
from renderq.registry import EngineRegistry
from renderq.stats import SuccessTracker, get_success_tracker


@pytest.fixture(autouse=True)
def renderq_home(tmp_path, monkeypatch):
    """Every test gets its own queue database."""
    home = tmp_path / "renderq-home"
    monkeypatch.setenv("RENDERQ_HOME", str(home))
    get_success_tracker().reset()
    return home


def make_segment(segment_id="s1", caps=(), start=0.0, end=5.0, source="asset://clip.mp4"):
    return TimelineSegment(
        segment_id=segment_id,
        source_ref=source,
        start_sec=start,
        end_sec=end,
        required_capabilities=frozenset(caps),
    )


def make_plan(*segments, plan_id="plan-1"):
    return ExecutionPlan(plan_id=plan_id, timeline=tuple(segments))


def make_engine(
    engine_id,
    caps,
    cost=CostProfile.LOW,
    location=ProcessingLocation.SERVER,
    max_duration=60,
    priority=0.5,
    available=True,
    async_completion=False,
):
    return EngineEntry(
        id=engine_id,
        name=engine_id.upper(),
        capabilities=frozenset(caps),
        cost_profile=cost,
        location=location,
        max_duration_sec=max_duration,
        priority_score=priority,
        available=available,
        async_completion=async_completion,
    )


@pytest.fixture
def stats():
    return SuccessTracker(window=10)


@pytest.fixture
def engine_a():
    return make_engine("engine-a", {Capability.TRANSCODE}, cost=CostProfile.FREE)


@pytest.fixture
def engine_b():
    return make_engine(
        "engine-b",
        {Capability.TRANSCODE, Capability.OVERLAY_TEXT, Capability.AI_GENERATE},
        cost=CostProfile.LOW,
    )


@pytest.fixture
def engine_c():
    return make_engine("engine-c", {Capability.TRANSCODE, Capability.OVERLAY_TEXT}, cost=CostProfile.FREE)


@pytest.fixture
def abc_registry(engine_a, engine_b, engine_c):
    return EngineRegistry([engine_a, engine_b, engine_c])


@pytest.fixture
def text_plan():
    return make_plan(
        make_segment("s1", {Capability.TRANSCODE}),
        make_segment("s2", {Capability.OVERLAY_TEXT}, start=5.0, end=12.0),
    )
