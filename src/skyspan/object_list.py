"""
SkySpan Object List

Collection of all objects of a run, keyed by object id, with the run-level
summaries used for reporting.

Classes:
    ObjectList: Dict of TrackedObject by id with aggregate statistics
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
from collections import Counter
from typing import Dict, List, Optional, Tuple

import numpy as np

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .data_classes import ObjectReport, UNKNOWN_HEIGHT
from .tracked_object import TrackedObject, letter_name


class ObjectList(Dict[int, TrackedObject]):
    """All objects of a run in creation order."""

    def __init__(self):
        super().__init__()
        self._reset_summary()

    def _reset_summary(self):
        self.min_location_err_m = 0.0
        self.max_location_err_m = 0.0
        self.sum_location_err_m = 0.0
        self.min_height_m = 0.0
        self.max_height_m = 0.0
        self.sum_height_m = 0.0
        self.min_height_err_m = 0.0
        self.max_height_err_m = 0.0
        self.sum_height_err_m = 0.0
        self.min_size_cm2 = 0.0
        self.max_size_cm2 = 0.0
        self.sum_size_cm2 = 0.0
        self.min_range_m = 0.0
        self.max_range_m = 0.0
        self.sum_range_m = 0.0
        self.max_heat = 0

    def add_object(self, tracked_object: TrackedObject) -> None:
        self[tracked_object.object_id] = tracked_object

    def tracked_objects(self) -> List[TrackedObject]:
        return [obj for obj in self.values() if obj.being_tracked]

    def significant_objects(self) -> List[TrackedObject]:
        return [obj for obj in self.values() if obj.significant]

    def ever_significant_objects(self) -> List[TrackedObject]:
        """Objects that were significant in some block and were seen long enough."""
        return [
            obj for obj in self.values()
            if obj.num_sig_blocks > 0 and obj.seen_for_min_durations() >= 1
        ]

    def num_significant_objects(self) -> int:
        return len(self.significant_objects())

    def num_ever_significant_objects(self) -> int:
        return len(self.ever_significant_objects())

    def stop_tracking(self) -> None:
        for obj in self.values():
            obj.being_tracked = False

    def get_object_by_location(self, location_m: Tuple[float, float],
                               min_delta_m: float = 1.0,
                               max_delta_m: float = 10.0) -> Optional[TrackedObject]:
        """
        Find the significant object nearest ``location_m``.

        The search box half-width grows from ``min_delta_m`` to ``max_delta_m``
        one metre at a time; the first box holding any object decides.
        """
        candidates = [
            obj for obj in self.ever_significant_objects() if obj.location_m is not None
        ]
        if not candidates:
            return None

        target = np.asarray(location_m, dtype=np.float64)
        distances = [
            float(np.max(np.abs(np.asarray(obj.location_m) - target))) for obj in candidates
        ]
        delta = min_delta_m
        while delta <= max_delta_m:
            within = [(d, obj) for d, obj in zip(distances, candidates) if d <= delta]
            if within:
                return min(within, key=lambda pair: pair[0])[1]
            delta += 1.0
        return None

    def ensure_objects_named(self) -> None:
        """Name significant objects "A", "B", ... in id order; others get "#id"."""
        for obj in self.values():
            if obj.name:
                continue
            if obj.num_sig_blocks > 0:
                obj.name = letter_name(obj.context.object_names.next_id())
            else:
                obj.name = f"#{obj.object_id}"

    def calculate_summary(self) -> None:
        """Min/max/sum of location error, height, size, range and heat over ever-significant objects."""
        self._reset_summary()
        objects = self.ever_significant_objects()
        if not objects:
            return

        def stats(values):
            values = [v for v in values if v is not None]
            if not values:
                return 0.0, 0.0, 0.0
            return float(min(values)), float(max(values)), float(sum(values))

        located = [obj for obj in objects if obj.location_m is not None]
        (self.min_location_err_m, self.max_location_err_m,
         self.sum_location_err_m) = stats([obj.location_err_m for obj in located])

        heighted = [obj for obj in objects if obj.height_m > UNKNOWN_HEIGHT]
        (self.min_height_m, self.max_height_m,
         self.sum_height_m) = stats([obj.height_m for obj in heighted])
        (self.min_height_err_m, self.max_height_err_m,
         self.sum_height_err_m) = stats([obj.height_err_m for obj in heighted])

        (self.min_size_cm2, self.max_size_cm2,
         self.sum_size_cm2) = stats([obj.size_cm2 for obj in objects if obj.size_cm2 > 0])
        (self.min_range_m, self.max_range_m,
         self.sum_range_m) = stats([obj.avg_range_m for obj in objects if obj.avg_range_m > 0])

        self.max_heat = max(obj.max_heat for obj in objects)

    def height_histogram(self, bin_m: float = 2.0) -> Dict[float, int]:
        """Count of ever-significant objects by height bin (lower edge in metres)."""
        heights = [obj.height_m for obj in self.ever_significant_objects() if obj.height_m > UNKNOWN_HEIGHT]
        return dict(sorted(Counter(float(np.floor(h / bin_m) * bin_m) for h in heights).items()))

    def describe_significant_objects(self) -> str:
        count = self.num_ever_significant_objects()
        return f"{count} Objects" if count != 1 else "1 Object"

    def significant_reports(self) -> List[ObjectReport]:
        self.ensure_objects_named()
        return [obj.report() for obj in self.ever_significant_objects()]
