"""
SkySpan Feature Module

A feature is one blob detected in one block (frame). Features are created by
the tracker from detector output (Real) or as placeholders while an object is
briefly lost (Unreal), and may later be merged into another feature of the
same block (Consumed).

Classes:
    Feature: Single-block detection with heat statistics and location

Functions:
    heat_statistics: Aggregate raw hot pixel values into HeatStats
    create_real: Build a Real feature from detector output
    create_unreal: Build an Unreal placeholder feature
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .data_classes import (
    DetectorKind,
    FeatureType,
    HeatStats,
    PixelBox,
    TrackerContractError,
    UNKNOWN_HEIGHT,
    UNKNOWN_VALUE,
)
from .geometry import CameraPose
from .track_state import RunContext


MAX_HEAT = 255


# ============================================================================
# FEATURE CLASS
# ============================================================================
@dataclass
class Feature:
    """A detected (or placeholder) blob in one block.

    Attributes:
        feature_id (int): Unique id, allocated from the run's feature sequence
        block_id (int): Block (frame) the feature belongs to
        type (FeatureType): Real, Unreal or Consumed
        pixel_box (PixelBox): Bounding box in image pixels
        detector (DetectorKind): Detector family that produced the feature
        pose (CameraPose, optional): Camera pose of the block
        significant (bool): Large and dense enough to start or extend an object
        is_tracked (bool): Still eligible to be claimed by an object
        object_id (int): Owning object, 0 while unclaimed
        location_m (tuple, optional): (easting, northing) once located
        height_m (float): Height above ground, UNKNOWN_HEIGHT until computed
        height_algorithm (str): How height_m was obtained, or why it failed
        range_m (float, optional): Slant distance from camera to location_m
    """

    feature_id: int
    block_id: int
    type: FeatureType
    pixel_box: PixelBox
    detector: DetectorKind = DetectorKind.COMB
    pose: Optional[CameraPose] = None

    min_heat: int = UNKNOWN_VALUE
    max_heat: int = UNKNOWN_VALUE
    num_hot_pixels: int = 0
    sum_hot_pixels: int = 0
    num_max_heat_pixels: int = 0

    significant: bool = False
    is_tracked: bool = True
    attributes: str = ""
    object_id: int = 0

    location_m: Optional[Tuple[float, float]] = None
    height_m: float = UNKNOWN_HEIGHT
    height_algorithm: str = ""
    range_m: Optional[float] = None

    @property
    def is_real(self) -> bool:
        return self.type == FeatureType.REAL

    @property
    def center(self) -> Tuple[float, float]:
        return self.pixel_box.center

    @property
    def heat_stats(self) -> HeatStats:
        return HeatStats(
            min_heat=self.min_heat,
            max_heat=self.max_heat,
            num_hot_pixels=self.num_hot_pixels,
            sum_hot_pixels=self.sum_hot_pixels,
            num_max_heat_pixels=self.num_max_heat_pixels,
        )

    def density_perc(self) -> float:
        """Percentage of the pixel box covered by hot pixels."""
        area = self.pixel_box.area
        if area <= 0:
            return 0.0
        return 100.0 * self.num_hot_pixels / area

    def significant_overlap(self, box: PixelBox, min_overlap_percent: float = 5.0) -> bool:
        """
        Does this feature overlap ``box`` enough to belong to it?

        The intersection is measured against each rectangle's own area (not
        the union), and either ratio reaching the threshold counts. A small
        box inside a large one therefore always overlaps significantly.
        """
        intersection = self.pixel_box.intersection_area(box)
        if intersection <= 0:
            return False

        threshold = min_overlap_percent / 100.0
        own_area = self.pixel_box.area
        other_area = box.area
        if own_area > 0 and intersection / own_area >= threshold:
            return True
        return other_area > 0 and intersection / other_area >= threshold

    def consume(self, other: "Feature") -> None:
        """
        Absorb ``other`` (a feature of the same block) into this feature.

        The pixel box grows to the union of both boxes and the hot pixel
        counts are added. ``other`` becomes Consumed: untracked, insignificant
        and unowned.

        Raises:
            TrackerContractError: If the features are from different blocks,
                or either is not Real.
        """
        if other is self:
            raise TrackerContractError("Feature cannot consume itself")
        if other.block_id != self.block_id:
            raise TrackerContractError(
                f"Feature {self.feature_id} (block {self.block_id}) cannot consume "
                f"feature {other.feature_id} from block {other.block_id}"
            )
        if not (self.is_real and other.is_real):
            raise TrackerContractError("Only Real features can consume or be consumed")

        self.pixel_box = self.pixel_box.union(other.pixel_box)

        if other.num_hot_pixels > 0:
            if self.num_hot_pixels > 0:
                self.min_heat = min(self.min_heat, other.min_heat)
                self.max_heat = max(self.max_heat, other.max_heat)
            else:
                self.min_heat, self.max_heat = other.min_heat, other.max_heat
            self.num_hot_pixels += other.num_hot_pixels
            self.sum_hot_pixels += other.sum_hot_pixels
            self.num_max_heat_pixels += other.num_max_heat_pixels

        other.type = FeatureType.CONSUMED
        other.significant = False
        other.is_tracked = False
        other.attributes = ""
        other.object_id = 0

    def set_location_height(self, location_m: Optional[Tuple[float, float]],
                            height_m: float, algorithm: str,
                            range_m: Optional[float] = None) -> None:
        self.location_m = None if location_m is None else (float(location_m[0]), float(location_m[1]))
        self.height_m = float(height_m)
        self.height_algorithm = algorithm
        if range_m is not None:
            self.range_m = float(range_m)

    def clear_location_height(self) -> None:
        """Forget any location or height, e.g. a stale single-view estimate."""
        self.location_m = None
        self.height_m = UNKNOWN_HEIGHT
        self.height_algorithm = ""
        self.range_m = None

    def set_height_algorithm_error(self, reason: str) -> None:
        # A successful algorithm tag is never replaced by an error
        if self.height_algorithm == "" or self.height_algorithm.startswith("Err"):
            self.height_algorithm = f"Err: {reason}"


# ============================================================================
# CONSTRUCTION FUNCTIONS
# ============================================================================

def heat_statistics(hot_pixels, heat_threshold: int) -> HeatStats:
    """
    Aggregate hot pixel values.

    Args:
        hot_pixels: Grey-scale values of the blob's hot pixels (any shape)
        heat_threshold: Value above which a pixel counts as hot

    Returns:
        HeatStats with min/max heat, count, the summed excess over the
        threshold, and the count of pixels at full heat
    """
    values = np.asarray(hot_pixels).ravel().astype(np.int64)
    if values.size == 0:
        return HeatStats()

    return HeatStats(
        min_heat=int(values.min()),
        max_heat=int(values.max()),
        num_hot_pixels=int(values.size),
        sum_hot_pixels=int(np.clip(values - heat_threshold, 0, None).sum()),
        num_max_heat_pixels=int(np.count_nonzero(values >= MAX_HEAT)),
    )


def _comb_significance(feature: Feature, context: RunContext) -> None:
    config = context.config
    size_ok = feature.num_hot_pixels >= config.feature_min_pixels
    density_ok = feature.density_perc() >= config.feature_min_density_perc
    feature.significant = size_ok and density_ok
    if feature.significant:
        feature.attributes = "Yes"
    else:
        feature.attributes = "No: {}{}".format("P" if size_ok else "p", "D" if density_ok else "d")


def _yolo_significance(feature: Feature, context: RunContext) -> None:
    feature.significant = feature.num_hot_pixels >= context.config.feature_min_pixels
    feature.attributes = "Yes" if feature.significant else "No: p"


_SIGNIFICANCE_BY_DETECTOR = {
    DetectorKind.COMB: _comb_significance,
    DetectorKind.YOLO: _yolo_significance,
}


def create_real(context: RunContext, block_id: int, pixel_box: PixelBox,
                hot_pixels=None, heat_stats: Optional[HeatStats] = None,
                pose: Optional[CameraPose] = None,
                detector: Optional[DetectorKind] = None) -> Feature:
    """
    Create a Real feature from detector output.

    Heat statistics come from ``hot_pixels`` when given, else from
    ``heat_stats``. Significance is decided by the detector-specific rule:
    both detectors need ``feature_min_pixels`` hot pixels, comb features also
    need ``feature_min_density_perc``. Only significant features are tracked.
    """
    detector = detector or context.detector
    if hot_pixels is not None:
        heat_stats = heat_statistics(hot_pixels, context.config.heat_threshold)
    elif heat_stats is None:
        heat_stats = HeatStats()

    feature = Feature(
        feature_id=context.feature_ids.next_id(),
        block_id=block_id,
        type=FeatureType.REAL,
        pixel_box=pixel_box,
        detector=detector,
        pose=pose,
        min_heat=heat_stats.min_heat,
        max_heat=heat_stats.max_heat,
        num_hot_pixels=heat_stats.num_hot_pixels,
        sum_hot_pixels=heat_stats.sum_hot_pixels,
        num_max_heat_pixels=heat_stats.num_max_heat_pixels,
    )
    _SIGNIFICANCE_BY_DETECTOR[detector](feature, context)
    feature.is_tracked = feature.significant
    return feature


def create_unreal(context: RunContext, block_id: int, pixel_box: PixelBox,
                  pose: Optional[CameraPose] = None) -> Feature:
    """Create a placeholder feature for an object that found no detection this block."""
    return Feature(
        feature_id=context.feature_ids.next_id(),
        block_id=block_id,
        type=FeatureType.UNREAL,
        pixel_box=pixel_box,
        detector=context.detector,
        pose=pose,
    )
