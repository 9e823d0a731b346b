"""
SkySpan Run State

Per-run state shared by features and objects: the id sequences and the
configuration. Keeping these in one context object (instead of class-level
counters) lets several trackers, or several tests, run side by side without
id collisions.

Classes:
    IdSequence: Monotonically increasing integer id generator
    RunContext: Configuration, intrinsics and id sequences of one run
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
import itertools
from dataclasses import dataclass, field
from typing import Optional

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .config import SkySpanConfig
from .data_classes import DetectorKind
from .geometry import CameraIntrinsics


class IdSequence:
    """Hands out 1, 2, 3, ... Ids are never reused; 0 stays free to mean 'none'."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self.last_id = start - 1

    def next_id(self) -> int:
        self.last_id = next(self._counter)
        return self.last_id


@dataclass
class RunContext:
    """Everything a feature or object needs to know about the run it belongs to."""

    config: SkySpanConfig = field(default_factory=SkySpanConfig)
    intrinsics: Optional[CameraIntrinsics] = None
    feature_ids: IdSequence = field(default_factory=IdSequence)
    object_ids: IdSequence = field(default_factory=IdSequence)
    object_names: IdSequence = field(default_factory=IdSequence)

    def __post_init__(self):
        if self.intrinsics is None:
            self.intrinsics = CameraIntrinsics.from_config(self.config)

    @property
    def detector(self) -> DetectorKind:
        return DetectorKind(self.config.detector)

    @property
    def frame_duration_ms(self) -> float:
        return 1000.0 / self.config.frame_rate
