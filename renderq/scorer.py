"""
Engine ranking.

Best first: cheapest cost tier, then declared priority, then recent success
rate, then local engines, then engine id. No randomness, so identical inputs
always give the identical order.
"""

from typing import Iterable, List, Optional, Tuple

from .models import EngineEntry, ProcessingLocation, ScoreConstraints
from .stats import SuccessTracker, get_success_tracker

# engines with no recorded outcomes
UNTRIED_SUCCESS_RATE = 1.0


def apply_constraints(
    candidates: Iterable[EngineEntry], constraints: Optional[ScoreConstraints]
) -> List[EngineEntry]:
    engines = list(candidates)
    if constraints is None:
        return engines
    if constraints.max_cost_profile is not None:
        cap = constraints.max_cost_profile.rank
        engines = [e for e in engines if e.cost_profile.rank <= cap]
    if constraints.force_location is not None:
        engines = [e for e in engines if e.location == constraints.force_location]
    return engines


def sort_key(engine: EngineEntry, stats: SuccessTracker) -> Tuple:
    rate = stats.rate(engine.id)
    if rate is None:
        rate = UNTRIED_SUCCESS_RATE
    return (
        engine.cost_profile.rank,
        -engine.priority_score,
        -rate,
        0 if engine.location == ProcessingLocation.LOCAL else 1,
        engine.id,
    )


def score_engines(
    candidates: Iterable[EngineEntry],
    constraints: Optional[ScoreConstraints] = None,
    stats: Optional[SuccessTracker] = None,
) -> List[EngineEntry]:
    if stats is None:
        stats = get_success_tracker()
    engines = apply_constraints(candidates, constraints)
    return sorted(engines, key=lambda e: sort_key(e, stats))
