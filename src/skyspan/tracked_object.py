"""
SkySpan Tracked Object Module

A tracked object is a physical entity (hopefully an animal) followed across
blocks. It owns the features it claims, predicts where it should appear in
the next block, and keeps summary statistics used to decide whether it is
significant.

Classes:
    TrackedObject: Object state machine, claim rules and aggregates

Functions:
    letter_name: Spreadsheet-style name for the n-th significant object
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
import math
from typing import Dict, List, Optional, Tuple

import numpy as np

# ============================================================================
# LOGGER
# ============================================================================
from loguru import logger

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .data_classes import (
    FeatureType,
    ObjectReport,
    PixelBox,
    TrackerContractError,
    UNKNOWN_HEIGHT,
    UNKNOWN_VALUE,
    UNREAL_COPY_HEIGHT_ALGORITHM,
)
from .feature import Feature
from .track_state import RunContext


JITTER_PIXELS = 5
ELLIPSE_FILL = 0.785


def letter_name(index: int) -> str:
    """1 -> "A", 26 -> "Z", 27 -> "AA"."""
    name = ""
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        name = chr(ord("A") + remainder) + name
    return name


class TrackedObject:
    """
    An entity tracked across blocks.

    The object is created from a Real feature and stays in the Tracking state
    (``being_tracked``) while it keeps finding features. When it misses a
    block it is carried forward by Unreal placeholder features until the
    persistence window runs out, after which it is Inactive for good. Inactive
    objects keep their features and statistics, so ever-significant objects
    still appear in the final report.

    Contract violations (claiming a feature owned elsewhere, starting from a
    non-Real feature, claiming into an inactive object) raise
    TrackerContractError.
    """

    def __init__(self, context: RunContext, first_feature: Feature):
        self.context = context
        self.config = context.config
        self.object_id = context.object_ids.next_id()
        self.name = ""

        # Ordered by insertion, which follows feature id and block order
        self.features: Dict[int, Feature] = {}
        self.last_real_feature_id = 0
        self.being_tracked = True

        self.max_real_pixel_width = 0
        self.max_real_pixel_height = 0
        self.max_num_real_hot_pixels = 0
        self.max_sum_real_hot_pixels = 0
        self.max_num_max_heat_pixels = 0

        self.significant = False
        self.attributes = ""
        self.num_sig_blocks = 0

        self.location_m: Optional[Tuple[float, float]] = None
        self.location_err_m: float = UNKNOWN_VALUE
        self.dem_m: Optional[float] = None
        self.height_m: float = UNKNOWN_HEIGHT
        self.height_err_m: float = UNKNOWN_VALUE
        self.min_height_m: float = UNKNOWN_HEIGHT
        self.max_height_m: float = UNKNOWN_HEIGHT
        self.size_cm2: float = 0.0
        self.avg_range_m: float = UNKNOWN_VALUE
        self.max_heat: int = UNKNOWN_VALUE
        self.triangulation = None

        self.claim_feature(first_feature)

    def __repr__(self) -> str:
        return (
            f"TrackedObject(id={self.object_id}, name={self.name!r}, features={len(self.features)}, "
            f"significant={self.significant}, being_tracked={self.being_tracked})"
        )

    # ------------------------------------------------------------------
    # Feature access
    # ------------------------------------------------------------------
    @property
    def first_feature(self) -> Optional[Feature]:
        return next(iter(self.features.values()), None)

    @property
    def last_feature(self) -> Optional[Feature]:
        return next(reversed(self.features.values()), None) if self.features else None

    @property
    def last_real_feature(self) -> Optional[Feature]:
        return self.features.get(self.last_real_feature_id)

    def real_features(self) -> List[Feature]:
        return [f for f in self.features.values() if f.is_real]

    def num_real_features(self) -> int:
        return sum(1 for f in self.features.values() if f.is_real)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    def _refuses_second_real_claim(self, feature: Feature) -> bool:
        last_real = self.last_real_feature
        return (
            self.config.single_feature_per_block
            and feature.is_real
            and last_real is not None
            and last_real.block_id == feature.block_id
        )

    def claim_feature(self, feature: Feature) -> bool:
        """
        Take ownership of a feature.

        A Real feature is appended when it is the object's first Real feature
        of its block. A further Real feature of the same block is either
        refused (one-feature-per-block mode, returns False) or consumed by the
        block's first feature. Unreal features are appended and inherit the
        object's current height.

        Returns:
            True if the feature was claimed (appended or consumed)

        Raises:
            TrackerContractError: On double claims, Consumed features, a
                non-Real first feature, or an inactive object
        """
        if feature.object_id != 0:
            raise TrackerContractError(
                f"Feature {feature.feature_id} is already owned by object {feature.object_id}"
            )
        if feature.type == FeatureType.CONSUMED:
            raise TrackerContractError(f"Feature {feature.feature_id} was consumed and cannot be claimed")
        if self.last_real_feature is None and not feature.is_real:
            raise TrackerContractError("Initial feature of an object must be Real")
        if not self.being_tracked:
            raise TrackerContractError(f"Object {self.object_id} is no longer tracked")

        if self._refuses_second_real_claim(feature):
            return False

        feature.object_id = self.object_id

        if feature.is_real:
            feature.is_tracked = True
            self.max_num_real_hot_pixels = max(self.max_num_real_hot_pixels, feature.num_hot_pixels)
            self.max_sum_real_hot_pixels = max(self.max_sum_real_hot_pixels, feature.sum_hot_pixels)
            self.max_num_max_heat_pixels = max(self.max_num_max_heat_pixels, feature.num_max_heat_pixels)

            last_real = self.last_real_feature
            if last_real is None or last_real.block_id < feature.block_id:
                self.features[feature.feature_id] = feature
                self.last_real_feature_id = feature.feature_id
                box = feature.pixel_box
            else:
                # Second real feature this block, e.g. a branch splitting one hot spot in two
                last_real.consume(feature)
                self.max_num_real_hot_pixels = max(self.max_num_real_hot_pixels, last_real.num_hot_pixels)
                self.max_sum_real_hot_pixels = max(self.max_sum_real_hot_pixels, last_real.sum_hot_pixels)
                box = last_real.pixel_box
                logger.debug(
                    f"Object {self.object_id}: feature {last_real.feature_id} consumed "
                    f"feature {feature.feature_id} in block {feature.block_id}"
                )

            self.max_real_pixel_width = max(self.max_real_pixel_width, box.width)
            self.max_real_pixel_height = max(self.max_real_pixel_height, box.height)
        else:
            self.features[feature.feature_id] = feature
            feature.height_m = self.height_m
            feature.height_algorithm = UNREAL_COPY_HEIGHT_ALGORITHM

        return True

    def maybe_claim_feature(self, feature: Feature, expected_box: PixelBox) -> bool:
        """Claim the feature if it is free, overlaps ``expected_box``, and either side is significant."""
        if not self.being_tracked or not feature.is_real:
            return False
        if self._refuses_second_real_claim(feature):
            return False
        if feature.object_id != 0:
            return False
        if not (feature.significant or self.significant):
            return False
        if not feature.significant_overlap(expected_box, self.config.feature_min_overlap_perc):
            return False
        return self.claim_feature(feature)

    # ------------------------------------------------------------------
    # Motion
    # ------------------------------------------------------------------
    def expected_location_this_block(self, x_scale: float = 1.0, y_scale: float = 2.0) -> PixelBox:
        """
        Where the object should appear in the block after its last feature.

        With two or more Real features, the pixel velocity between the first
        and last Real feature centres is applied to the last feature's box, and
        the box is widened to the largest Real box seen (scaled by
        ``x_scale``/``y_scale``) to tolerate partial occlusion. With one Real
        feature the last box is reused. A further 5 pixel margin absorbs drone
        jitter when the last feature is Real.
        """
        last = self.last_feature
        real = self.real_features()
        box = last.pixel_box

        if len(real) >= 2:
            first_real, last_real = real[0], real[-1]
            block_span = last_real.block_id - first_real.block_id
            if block_span > 0:
                (fx, fy), (lx, ly) = first_real.center, last_real.center
                vx = (lx - fx) / block_span
                vy = (ly - fy) / block_span
                half_width_diff = (self.max_real_pixel_width - box.width) / 2.0
                half_height_diff = (self.max_real_pixel_height - box.height) / 2.0
                box = PixelBox(
                    int(box.x + vx - half_width_diff),
                    int(box.y + vy - half_height_diff),
                    int(self.max_real_pixel_width * x_scale),
                    int(self.max_real_pixel_height * y_scale),
                )

        if last.is_real:
            box = box.inflate(JITTER_PIXELS, JITTER_PIXELS)
        return box

    def keep_tracking(self, block_id: int) -> bool:
        """
        Decide whether to carry the object through a block with no Real claim.

        Still images never persist. In video the object survives while fewer
        than ``object_max_unreal_blocks`` Unreal features follow its last Real
        feature. Becoming inactive is permanent.
        """
        if not self.being_tracked:
            return False

        last_real = self.last_real_feature
        if not self.config.input_is_video:
            self.being_tracked = False
        elif last_real.block_id >= block_id:
            self.being_tracked = True
        else:
            gap = self.last_feature.block_id - last_real.block_id
            self.being_tracked = gap < self.config.object_max_unreal_blocks

        if not self.being_tracked:
            logger.debug(f"Object {self.object_id} stopped tracking at block {block_id}")
        return self.being_tracked

    # ------------------------------------------------------------------
    # Significance
    # ------------------------------------------------------------------
    def seen_for_min_durations(self) -> float:
        """How many multiples of ``object_min_duration_ms`` the object has been seen for."""
        if not self.config.input_is_video:
            return 1.0
        seen_ms = self.num_real_features() * self.context.frame_duration_ms
        return seen_ms / self.config.object_min_duration_ms

    def real_density_px(self) -> float:
        """Hot pixels per pixel of the ellipse inscribed in the largest Real box."""
        if self.max_real_pixel_width <= 0 or self.max_real_pixel_height <= 0:
            return 0.0
        pixel_area = ELLIPSE_FILL * self.max_real_pixel_width * self.max_real_pixel_height
        return self.max_num_real_hot_pixels / pixel_area

    def vaguely_significant(self) -> bool:
        config = self.config
        if config.object_min_pixels > 0 and self.max_num_real_hot_pixels < config.object_min_pixels:
            return False
        if config.object_max_pixels > 0 and self.max_num_real_hot_pixels > config.object_max_pixels:
            return False
        return True

    def calculate_significant(self) -> bool:
        """
        Label the object significant from its pixels, density, duration and elevation.

        Each axis has ok/good/great tiers. The object is significant when
        pixels and density are ok and, for video, it has been seen long
        enough and is either clearly above ground or clearly large.
        ``num_sig_blocks`` counts the evaluations that found it significant.
        """
        config = self.config
        max_pixels = self.max_num_real_hot_pixels

        pixel_basics = (
            self.max_num_max_heat_pixels >= config.object_min_max_heat_pixels
            and (config.object_max_pixels <= 0 or max_pixels <= config.object_max_pixels)
        )
        pixels_ok = pixel_basics and max_pixels > config.object_min_pixels
        pixels_good = pixel_basics and max_pixels > 2 * config.object_min_pixels
        pixels_great = pixel_basics and max_pixels > 4 * config.object_min_pixels

        density_ok = self.real_density_px() >= config.object_min_hot_density

        seen = self.seen_for_min_durations()
        time_ok = seen >= 1
        time_good = seen >= 2
        time_great = seen >= 4

        elevation_ok = self.height_m >= 0
        elevation_good = self.height_m > 2
        elevation_great = self.height_m > 4

        self.significant = (
            pixels_ok
            and density_ok
            and (not config.input_is_video or (time_ok and (elevation_good or pixels_good)))
        )
        if self.significant:
            self.num_sig_blocks += 1

        self.attributes = " ".join([
            "Sig" if self.significant else "",
            "P3" if pixels_great else ("P2" if pixels_good else ("P1" if pixels_ok else "p")),
            "T3" if time_great else ("T2" if time_good else ("T1" if time_ok else "t")),
            "E3" if elevation_great else ("E2" if elevation_good else ("E1" if elevation_ok else "e")),
        ]).strip()
        return self.significant

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    def set_triangulation(self, result, ground_elevation: Optional[float]) -> None:
        """Adopt a converged triangulation as the object's location and height."""
        self.triangulation = result
        self.location_m = result.location_m
        self.dem_m = ground_elevation
        if ground_elevation is not None:
            self.height_m = result.elevation - ground_elevation

    def calculate_location(self) -> None:
        """Location is the triangulated point, else the centroid of located Real features.
        The error is the mean distance of those features from it."""
        located = [f.location_m for f in self.real_features() if f.location_m is not None]
        if self.triangulation is not None and self.triangulation.converged:
            center = np.asarray(self.triangulation.location_m)
        elif located:
            center = np.mean(np.asarray(located), axis=0)
        else:
            return

        self.location_m = (float(center[0]), float(center[1]))
        if located:
            distances = np.linalg.norm(np.asarray(located) - center, axis=1)
            self.location_err_m = float(distances.mean())
        else:
            self.location_err_m = 0.0

    def calculate_height(self, terrain=None) -> None:
        """Height from the triangulation, else the mean of known Real feature heights."""
        heights = [f.height_m for f in self.real_features() if f.height_m > UNKNOWN_HEIGHT]

        if terrain is not None and self.location_m is not None:
            self.dem_m = terrain(*self.location_m)

        if self.triangulation is not None and self.triangulation.converged and self.dem_m is not None:
            self.height_m = self.triangulation.elevation - self.dem_m
        elif heights:
            self.height_m = float(np.mean(heights))
        else:
            return

        if heights:
            self.min_height_m = float(min(heights))
            self.max_height_m = float(max(heights))
            self.height_err_m = float(max(self.max_height_m - self.height_m, self.height_m - self.min_height_m))
        else:
            self.min_height_m = self.max_height_m = self.height_m
            self.height_err_m = 0.0

    def calculate_size_and_range(self) -> None:
        """Size (cm2) from hot pixels and the image footprint at each Real feature's range."""
        intrinsics = self.context.intrinsics
        ranges = []
        for feature in self.real_features():
            if feature.range_m is None:
                continue
            ranges.append(feature.range_m)
            footprint_m2 = intrinsics.ground_footprint_m2(feature.range_m)
            size_cm2 = footprint_m2 * feature.num_hot_pixels / intrinsics.num_pixels * 100 * 100
            self.size_cm2 = max(self.size_cm2, size_cm2)
        if ranges:
            self.avg_range_m = float(np.mean(ranges))

        heats = [f.max_heat for f in self.real_features() if f.num_hot_pixels > 0]
        if heats:
            self.max_heat = max(heats)

    def update_aggregates(self, terrain=None) -> None:
        """Recompute location, height and size after a block's claims settle.

        Significance is only re-evaluated when the block brought a Real
        feature, so placeholder blocks never add to ``num_sig_blocks``.
        """
        self.calculate_location()
        self.calculate_height(terrain)
        self.calculate_size_and_range()
        if self.last_feature.is_real:
            self.calculate_significant()

    def fill_missing_locations_and_heights(self) -> None:
        """Give Real features without a location or height the previous feature's values."""
        prev_location = None
        prev_height = UNKNOWN_HEIGHT
        for feature in self.real_features():
            fix = False
            if feature.location_m is not None:
                prev_location = feature.location_m
            else:
                fix = True
            if feature.height_m > UNKNOWN_HEIGHT:
                prev_height = feature.height_m
            else:
                fix = True
            if fix and prev_location is not None:
                feature.location_m = prev_location
                feature.height_m = prev_height

    def report(self) -> ObjectReport:
        return ObjectReport(
            name=self.name or f"#{self.object_id}",
            object_id=self.object_id,
            location_m=self.location_m,
            location_err_m=self.location_err_m,
            height_m=self.height_m,
            height_err_m=self.height_err_m,
            size_cm2=float(math.floor(self.size_cm2)),
            num_sig_blocks=self.num_sig_blocks,
            attributes=self.attributes,
        )
