"""
Engine registry.

Catalog of rendering/generation engines with their capabilities, cost tier
and processing location. Readers take an immutable snapshot (a tuple of
frozen entries); `replace()` swaps the whole snapshot at once, so a dispatch
in flight sees either the old catalog or the new one, never a mix.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .errors import RegistryError
from .models import Capability as C
from .models import CostProfile, EngineEntry, ProcessingLocation

logger = logging.getLogger(__name__)

_EDIT = frozenset({C.TRANSCODE, C.TRIM, C.SPEED_CHANGE, C.RESIZE, C.FORMAT_CONVERT})
_COMPOSE = frozenset({C.OVERLAY, C.OVERLAY_TEXT, C.TRANSITION, C.FILTERS, C.AUDIO_MIX, C.AUDIO_FADE})


DEFAULT_ENGINES: Tuple[EngineEntry, ...] = (
    # in-browser / local codecs
    EngineEntry(
        id="ffmpeg-wasm",
        name="FFmpeg WebAssembly",
        capabilities=_EDIT | _COMPOSE,
        cost_profile=CostProfile.FREE,
        location=ProcessingLocation.LOCAL,
        max_duration_sec=120,
        priority_score=0.85,
    ),
    EngineEntry(
        id="webcodecs",
        name="WebCodecs API",
        capabilities=frozenset({C.TRANSCODE, C.TRIM, C.SPEED_CHANGE, C.AUDIO_MIX}),
        cost_profile=CostProfile.FREE,
        location=ProcessingLocation.LOCAL,
        max_duration_sec=60,
        priority_score=0.75,
    ),
    # server-side media pipeline
    EngineEntry(
        id="ffmpeg-server",
        name="FFmpeg Server",
        capabilities=_EDIT | _COMPOSE,
        cost_profile=CostProfile.LOW,
        location=ProcessingLocation.SERVER,
        max_duration_sec=600,
        priority_score=0.92,
    ),
    EngineEntry(
        id="remotion",
        name="Remotion",
        capabilities=_EDIT | _COMPOSE,
        cost_profile=CostProfile.LOW,
        location=ProcessingLocation.SERVER,
        max_duration_sec=300,
        priority_score=0.95,
    ),
    # cloud transcoding
    EngineEntry(
        id="cloudinary",
        name="Cloudinary",
        capabilities=_EDIT | _COMPOSE,
        cost_profile=CostProfile.MEDIUM,
        location=ProcessingLocation.CLOUD,
        max_duration_sec=300,
        priority_score=0.98,
    ),
    EngineEntry(
        id="mux",
        name="Mux Video",
        capabilities=_EDIT | frozenset({C.AUDIO_MIX}),
        cost_profile=CostProfile.MEDIUM,
        location=ProcessingLocation.CLOUD,
        max_duration_sec=600,
        priority_score=0.97,
    ),
    # generative APIs, completed by callback
    EngineEntry(
        id="fal-ai",
        name="Fal.ai",
        capabilities=_EDIT | _COMPOSE | frozenset({C.AI_GENERATE}),
        cost_profile=CostProfile.MEDIUM,
        location=ProcessingLocation.CLOUD,
        max_duration_sec=60,
        priority_score=0.88,
        async_completion=True,
    ),
    EngineEntry(
        id="kling-ai",
        name="Kling AI",
        capabilities=frozenset({C.AI_GENERATE}),
        cost_profile=CostProfile.MEDIUM,
        location=ProcessingLocation.CLOUD,
        max_duration_sec=10,
        priority_score=0.82,
        async_completion=True,
    ),
    EngineEntry(
        id="runway-gen3",
        name="Runway Gen-3",
        capabilities=frozenset({C.AI_GENERATE}),
        cost_profile=CostProfile.HIGH,
        location=ProcessingLocation.CLOUD,
        max_duration_sec=10,
        priority_score=0.85,
        async_completion=True,
    ),
    EngineEntry(
        id="heygen",
        name="HeyGen",
        capabilities=frozenset({C.AI_GENERATE, C.AVATAR, C.AUDIO_MIX}),
        cost_profile=CostProfile.HIGH,
        location=ProcessingLocation.CLOUD,
        max_duration_sec=120,
        priority_score=0.90,
        async_completion=True,
    ),
)


class EngineRegistry:
    """
    Registry of engine entries.

    Provides:
    - Snapshot reads for the matcher and the dispatcher
    - Lookup by engine id
    - Atomic replacement when configuration changes
    """

    def __init__(self, entries: Iterable[EngineEntry] = DEFAULT_ENGINES):
        self._write_lock = threading.Lock()
        self._snapshot: Tuple[EngineEntry, ...] = _validated(entries)

    def snapshot(self) -> Tuple[EngineEntry, ...]:
        return self._snapshot

    def get(self, engine_id: str) -> Optional[EngineEntry]:
        for entry in self._snapshot:
            if entry.id == engine_id:
                return entry
        return None

    def available(self) -> List[EngineEntry]:
        return [e for e in self._snapshot if e.available]

    def replace(self, entries: Iterable[EngineEntry]) -> None:
        """Swap in a new catalog. Calls in flight keep the snapshot they took."""
        new_snapshot = _validated(entries)
        with self._write_lock:
            self._snapshot = new_snapshot
        logger.info("Engine registry replaced (%d engines)", len(new_snapshot))

    def list_engines(self) -> List[dict]:
        """Engine info dicts for CLI display."""
        return [
            {
                "id": e.id,
                "name": e.name,
                "location": e.location.value,
                "cost": e.cost_profile.value,
                "priority": e.priority_score,
                "max_duration_sec": e.max_duration_sec,
                "available": e.available,
                "async": e.async_completion,
                "capabilities": sorted(c.value for c in e.capabilities),
            }
            for e in self._snapshot
        ]

    def __len__(self) -> int:
        return len(self._snapshot)


def _validated(entries: Iterable[EngineEntry]) -> Tuple[EngineEntry, ...]:
    snapshot = tuple(entries)
    seen = set()
    for entry in snapshot:
        if entry.id in seen:
            raise RegistryError(f"duplicate engine id: {entry.id}")
        seen.add(entry.id)
    return snapshot


def load_registry_file(path) -> List[EngineEntry]:
    """Read a JSON list of engine entries."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise RegistryError(f"cannot read engine registry {path}: {e}") from e
    if not isinstance(raw, list):
        raise RegistryError(f"engine registry {path} must be a JSON list")
    try:
        return [EngineEntry.model_validate(item) for item in raw]
    except ValidationError as e:
        raise RegistryError(f"invalid engine entry in {path}: {e}") from e


# Global registry instance
_default_registry: Optional[EngineRegistry] = None
_default_lock = threading.Lock()


def get_registry() -> EngineRegistry:
    """Process-wide registry, created with the default catalog on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = EngineRegistry()
        return _default_registry
