"""renderq - execution router and durable job queue for rendering engines."""

from .dispatcher import Dispatcher, route_execution
from .matcher import get_compatible_engines
from .scorer import score_engines
from .storage import get_job

__all__ = ["Dispatcher", "route_execution", "get_compatible_engines", "score_engines", "get_job"]
