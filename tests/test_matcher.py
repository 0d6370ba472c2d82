"""
Tests for capability matching.

A plan's requirement is the union of its segments' capabilities; an engine
qualifies when it is available, covers that union and accepts the longest
segment.
"""

import itertools

from renderq.matcher import get_compatible_engines, missing_capabilities, required_capabilities
from renderq.models import Capability
from renderq.registry import EngineRegistry
from tests.conftest import make_engine, make_plan, make_segment


def test_required_capabilities_is_union_of_segments(text_plan):
    assert required_capabilities(text_plan) == {Capability.TRANSCODE, Capability.OVERLAY_TEXT}


def test_scenario_compatible_engines(abc_registry, text_plan):
    compatible = get_compatible_engines(text_plan, abc_registry)
    assert [e.id for e in compatible] == ["engine-b", "engine-c"]


def test_missing_capabilities(engine_a, text_plan):
    assert missing_capabilities(text_plan, engine_a) == {Capability.OVERLAY_TEXT}


def test_no_engine_qualifies_returns_empty_list(abc_registry):
    plan = make_plan(make_segment(caps={Capability.AVATAR}))
    assert get_compatible_engines(plan, abc_registry) == []


def test_unavailable_engines_are_skipped():
    registry = EngineRegistry([
        make_engine("up", {Capability.TRANSCODE}),
        make_engine("down", {Capability.TRANSCODE}, available=False),
    ])
    plan = make_plan(make_segment(caps={Capability.TRANSCODE}))
    assert [e.id for e in get_compatible_engines(plan, registry)] == ["up"]


def test_longest_segment_must_fit_engine_duration():
    registry = EngineRegistry([
        make_engine("short", {Capability.TRANSCODE}, max_duration=10),
        make_engine("long", {Capability.TRANSCODE}, max_duration=300),
    ])
    plan = make_plan(
        make_segment("s1", {Capability.TRANSCODE}, end=8),
        make_segment("s2", {Capability.TRANSCODE}, start=8, end=20),
    )
    assert [e.id for e in get_compatible_engines(plan, registry)] == ["long"]


def test_duration_limit_is_inclusive():
    registry = EngineRegistry([make_engine("exact", {Capability.TRANSCODE}, max_duration=10)])
    plan = make_plan(make_segment(caps={Capability.TRANSCODE}, start=0, end=10))
    assert len(get_compatible_engines(plan, registry)) == 1


def test_matches_exactly_the_subset_and_duration_engines():
    caps = [Capability.TRANSCODE, Capability.OVERLAY_TEXT, Capability.AUDIO_MIX]
    engines = []
    for n in range(len(caps) + 1):
        for i, combo in enumerate(itertools.combinations(caps, n)):
            for max_duration in (5, 50):
                engines.append(make_engine(f"e{n}-{i}-{max_duration}", set(combo), max_duration=max_duration))
    registry = EngineRegistry(engines)

    for n in range(len(caps) + 1):
        for combo in itertools.combinations(caps, n):
            plan = make_plan(make_segment(caps=set(combo), end=20))
            expected = {
                e.id for e in engines if set(combo) <= e.capabilities and e.max_duration_sec >= 20
            }
            got = {e.id for e in get_compatible_engines(plan, registry)}
            assert got == expected
            assert got, "a full-capability engine with enough duration always exists"
