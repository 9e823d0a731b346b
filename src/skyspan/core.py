"""
SkySpan Core Implementation

This module contains the SkySpan block-by-block tracker. Each block (video
frame) brings the hot blobs found by a detector and the drone camera pose.
The tracker lets existing objects claim the blobs that overlap where they are
expected, carries briefly lost objects forward with placeholder features,
starts new objects from unclaimed significant blobs, and locates objects on
the ground by line of sight and multi-view triangulation.

Classes:
    Timer: High-resolution timer for per-stage profiling
    SkySpanTracker: Main tracking class implementing the block pipeline
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
import time
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

# ============================================================================
# LOGGER
# ============================================================================
from loguru import logger

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .config import SkySpanConfig, merge_config_with_priority
from .data_classes import DetectedFeature, ObjectReport, TrackerContractError
from .feature import Feature, create_real, create_unreal
from .geometry import CameraIntrinsics, CameraPose, rotation_matrix
from .line_of_sight import TerrainGrid, TerrainOracle, locate_feature_line_of_sight
from .object_list import ObjectList
from .track_state import RunContext
from .tracked_object import TrackedObject, letter_name
from .triangulation import triangulate_object


# ============================================================================
# PERFORMANCE TIMING UTILITIES
# ============================================================================
class Timer:
    """Simple high-resolution timer for performance profiling."""

    def __init__(self):
        self._start_times = {}

    def start(self, key: str) -> None:
        """Start timing for the given key."""
        self._start_times[key] = time.perf_counter()

    def stop(self, key: str, store: dict) -> None:
        """Stop timing for the given key and accumulate the duration."""
        if key in self._start_times:
            duration = time.perf_counter() - self._start_times[key]
            store[key] = store.get(key, 0.0) + duration


# ============================================================================
# MAIN TRACKER CLASS
# ============================================================================
class SkySpanTracker:
    """
    Main SkySpan block tracker.

    Blocks must be fed in increasing ``block_id`` order. Between calls to
    ``update`` every feature is owned by at most one object and every object
    is in a consistent state.

    Example:
        >>> tracker = SkySpanTracker(terrain=TerrainGrid.flat(50.0))
        >>> pose = CameraPose(easting=0.0, northing=0.0, altitude=120.0)
        >>> tracker.update(1, [DetectedFeature(PixelBox(300, 250, 8, 8), hot_pixels=np.full(40, 240))], pose)
        >>> reports = tracker.finalize()
    """

    def __init__(
        self,
        config: Optional[Union[SkySpanConfig, dict]] = None,
        terrain: Optional[TerrainOracle] = None,
        intrinsics: Optional[CameraIntrinsics] = None,
        yaml_config_location: Optional[str] = None,
        **kwargs
    ):
        """Initialize the tracker.

        Args:
            config: Configuration object, or a dictionary of overrides.
                Dictionaries and None are merged over a local
                skyspan_config.yaml and the defaults.
            terrain: Ground elevation oracle. Without one, objects are tracked
                but not located.
            intrinsics: Camera intrinsics (default: built from the config)
            yaml_config_location: File whose directory is searched first
                for skyspan_config.yaml
            **kwargs: Additional keyword arguments (ignored for compatibility)
        """
        if isinstance(config, SkySpanConfig):
            self.config = config
        else:
            self.config = merge_config_with_priority(
                runtime_config=config,
                yaml_config_location=yaml_config_location,
            )
        self.config.validate()

        self.terrain = terrain
        self.intrinsics = intrinsics or CameraIntrinsics.from_config(self.config)

        self._initialize_from_config()
        self._setup_tracker_state()
        self._precompile_numba()

    def _initialize_from_config(self):
        """Initialize tracker parameters from configuration."""
        self.search_higher_pixels = self.config.search_higher_pixels
        self.input_is_video = self.config.input_is_video
        self.debug_timings = self.config.debug_timings

    def _setup_tracker_state(self):
        """Initialize tracker state variables."""
        self.context = RunContext(config=self.config, intrinsics=self.intrinsics)
        self.features: Dict[int, Feature] = {}
        self.objects = ObjectList()
        self._last_block_id: Optional[int] = None
        self._block_count = 0
        self.timings = {}

    def _precompile_numba(self):
        """Pre-compile Numba functions for better performance."""
        if not getattr(self, "_numba_compiled", False):
            try:
                rotation_matrix(0.0, 90.0, 0.0)
                terrain = TerrainGrid(np.zeros((2, 2)))
                terrain.walk(np.array([0.5, 0.5, 1.0]), np.array([0.0, 0.0, -1.0]), 0.5, 2.0)
                self._numba_compiled = True
                logger.debug("Numba functions compiled successfully")
            except Exception as e:
                logger.warning(f"Numba compilation warning: {e}")

    # ------------------------------------------------------------------
    # Block pipeline
    # ------------------------------------------------------------------
    def update(self, block_id: int, detections: Sequence[DetectedFeature],
               pose: Optional[CameraPose] = None) -> List[TrackedObject]:
        """
        Process one block.

        Args:
            block_id: Block (frame) number, strictly increasing between calls
            detections: Detector output for the block
            pose: Camera pose of the block (needed for location estimation)

        Returns:
            Objects still being tracked after the block
        """
        if self._last_block_id is not None and block_id <= self._last_block_id:
            raise TrackerContractError(
                f"Block {block_id} received after block {self._last_block_id}; blocks must increase"
            )
        self._last_block_id = block_id
        self._block_count += 1
        timer = Timer() if self.debug_timings else None

        if timer: timer.start("create_features")
        block_features = self._create_features(block_id, detections, pose)
        if timer: timer.stop("create_features", self.timings)

        if timer: timer.start("claim")
        in_scope = self._objects_in_scope(block_id)
        available = [f for f in block_features if f.is_real]
        claimed_ids = self._claim_expected(in_scope, available)
        self._claim_searching_higher(in_scope, available, claimed_ids)
        if timer: timer.stop("claim", self.timings)

        if timer: timer.start("persist")
        self._persist_unclaimed(in_scope, block_id, pose)
        if timer: timer.stop("persist", self.timings)

        if timer: timer.start("create_objects")
        new_objects = self._create_objects(available)
        if timer: timer.stop("create_objects", self.timings)

        if timer: timer.start("locate")
        updated = in_scope + new_objects
        for obj in updated:
            last_real = obj.last_real_feature
            if last_real is not None and last_real.block_id == block_id:
                self._locate(obj, last_real)
        if timer: timer.stop("locate", self.timings)

        if timer: timer.start("aggregates")
        for obj in updated:
            obj.update_aggregates(self.terrain)
            if obj.significant and not obj.name:
                obj.name = letter_name(self.context.object_names.next_id())
                logger.debug(f"Object {obj.object_id} is significant, named {obj.name} ({obj.attributes})")
        if timer: timer.stop("aggregates", self.timings)

        if self.debug_timings:
            self._log_timings()

        return self.objects.tracked_objects()

    def _create_features(self, block_id: int, detections: Sequence[DetectedFeature],
                         pose: Optional[CameraPose]) -> List[Feature]:
        features = []
        for detection in detections:
            feature = create_real(
                self.context, block_id, detection.pixel_box,
                hot_pixels=detection.hot_pixels, heat_stats=detection.heat_stats, pose=pose,
            )
            self.features[feature.feature_id] = feature
            features.append(feature)
        return features

    def _objects_in_scope(self, block_id: int) -> List[TrackedObject]:
        """Tracked objects whose last feature is in the previous block."""
        in_scope = []
        for obj in self.objects.tracked_objects():
            if obj.last_feature.block_id < block_id - 1:
                # A block gap the object could not be carried across
                obj.being_tracked = False
                logger.debug(f"Object {obj.object_id} dropped after block gap at block {block_id}")
            elif obj.vaguely_significant():
                in_scope.append(obj)
        return in_scope

    def _claim_from(self, obj: TrackedObject, expected_box, available: List[Feature]) -> bool:
        claimed = False
        for feature in list(available):
            if obj.maybe_claim_feature(feature, expected_box):
                available.remove(feature)
                claimed = True
        return claimed

    def _claim_expected(self, in_scope: List[TrackedObject], available: List[Feature]) -> set:
        """Two passes: objects whose last feature is Real claim first, then the rest."""
        claimed_ids = set()
        for real_pass in (True, False):
            for obj in in_scope:
                if obj.last_feature.is_real != real_pass:
                    continue
                expected = obj.expected_location_this_block()
                if self._claim_from(obj, expected, available):
                    claimed_ids.add(obj.object_id)
                    logger.debug(f"Object {obj.object_id} claimed features near {expected}")
        return claimed_ids

    def _claim_searching_higher(self, in_scope: List[TrackedObject], available: List[Feature],
                                claimed_ids: set) -> None:
        """Young objects predict poorly; retry them with the expected box shifted down the image."""
        for obj in in_scope:
            if obj.object_id in claimed_ids or obj.num_real_features() > 2:
                continue
            expected = obj.expected_location_this_block().offset(0, self.search_higher_pixels)
            if self._claim_from(obj, expected, available):
                claimed_ids.add(obj.object_id)

    def _persist_unclaimed(self, in_scope: List[TrackedObject], block_id: int,
                           pose: Optional[CameraPose]) -> None:
        """Carry objects that found no Real feature with an Unreal one at the expected box."""
        for obj in in_scope:
            if not obj.being_tracked or obj.last_real_feature.block_id >= block_id:
                continue
            if not obj.keep_tracking(block_id):
                continue
            expected = obj.expected_location_this_block()
            placeholder = create_unreal(self.context, block_id, expected, pose=pose)
            self.features[placeholder.feature_id] = placeholder
            obj.claim_feature(placeholder)

    def _create_objects(self, available: List[Feature]) -> List[TrackedObject]:
        new_objects = []
        for feature in available:
            if feature.is_tracked and feature.is_real and feature.object_id == 0:
                obj = TrackedObject(self.context, feature)
                self.objects.add_object(obj)
                new_objects.append(obj)
                logger.debug(f"Feature {feature.feature_id} started object {obj.object_id}")
        return new_objects

    def _locate(self, obj: TrackedObject, feature: Feature) -> None:
        if self.terrain is None:
            return
        locate_feature_line_of_sight(feature, self.intrinsics, self.terrain, self.config)
        if obj.num_real_features() >= 2:
            triangulate_object(obj, self.intrinsics, self.terrain, self.config)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def finalize(self) -> List[ObjectReport]:
        """
        End the run: stop tracking, fill location gaps, name objects and
        report every object that was ever significant.
        """
        self.objects.stop_tracking()
        for obj in self.objects.values():
            obj.fill_missing_locations_and_heights()
        self.objects.ensure_objects_named()
        self.objects.calculate_summary()
        reports = self.objects.significant_reports()
        logger.info(
            f"Processed {self._block_count} blocks: {len(self.objects)} objects, "
            f"{self.objects.describe_significant_objects()} significant"
        )
        return reports

    def _log_timings(self):
        """Log timing information for debugging."""
        if self._block_count % 10 == 0:
            formatted = {k: f"{v*1000:.2f} ms" for k, v in self.timings.items()}
            logger.info(f"[Block {self._last_block_id}] Timings: {formatted}")
            self.timings.clear()

    def reset(self):
        """Reset the tracker to initial state."""
        self._setup_tracker_state()
        logger.info("SkySpan tracker reset")

    @property
    def block_count(self):
        """Number of blocks processed."""
        return self._block_count

    def get_state(self) -> dict:
        """Get current tracker state for debugging."""
        return {
            "block_count": self._block_count,
            "last_block_id": self._last_block_id,
            "n_features": len(self.features),
            "n_objects": len(self.objects),
            "n_tracked": len(self.objects.tracked_objects()),
            "n_significant": self.objects.num_significant_objects(),
            "object_ids": list(self.objects.keys()),
        }
