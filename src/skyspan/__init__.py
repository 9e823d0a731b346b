"""
SkySpan - Thermal Drone Object Tracking and Location

Tracks hot blobs (animals, people) across the frames of drone thermal video
and estimates where each one is on the ground.

Features:
- Block-by-block association of detections into persistent objects
- Placeholder features that carry objects through brief detector dropouts
- Significance heuristic separating animals from noise
- Multi-view triangulation from the drone's moving camera
- Line-of-sight terrain intersection when only one view is available

Installation:
    pip install skyspan

    # Development installation
    pip install -e .[test]

Basic Usage:
    import numpy as np
    from skyspan import SkySpanTracker, DetectedFeature, PixelBox, CameraPose, TerrainGrid

    tracker = SkySpanTracker(terrain=TerrainGrid.flat(50.0))

    for block_id, (boxes, pose) in enumerate(flight, start=1):
        detections = [DetectedFeature(box, hot_pixels=pixels) for box, pixels in boxes]
        tracker.update(block_id, detections, pose)

    for report in tracker.finalize():
        print(f"{report.name}: {report.location_m} height {report.height_m:.1f}m")
"""

# Core tracking functionality
from .core import SkySpanTracker
from .config import SkySpanConfig, load_config
from .data_classes import (
    DetectedFeature,
    DetectorKind,
    FeatureType,
    HeatStats,
    LocationResult,
    ObjectReport,
    PixelBox,
    TrackerContractError,
    UNKNOWN_HEIGHT,
)
from .feature import Feature, create_real, create_unreal
from .tracked_object import TrackedObject
from .object_list import ObjectList
from .track_state import RunContext

# Location estimation
from .geometry import CameraIntrinsics, CameraPose, ray_direction, project_point, rotation_matrix
from .line_of_sight import TerrainGrid, estimate_line_of_sight
from .triangulation import TriangulationResult, solve_rays, triangulate

__version__ = "0.1.0"

__all__ = [
    # Core
    "SkySpanTracker",
    "SkySpanConfig",
    "load_config",
    "RunContext",
    # Data classes
    "DetectedFeature",
    "DetectorKind",
    "FeatureType",
    "HeatStats",
    "LocationResult",
    "ObjectReport",
    "PixelBox",
    "TrackerContractError",
    "UNKNOWN_HEIGHT",
    # Tracking
    "Feature",
    "create_real",
    "create_unreal",
    "TrackedObject",
    "ObjectList",
    # Location
    "CameraIntrinsics",
    "CameraPose",
    "ray_direction",
    "project_point",
    "rotation_matrix",
    "TerrainGrid",
    "estimate_line_of_sight",
    "TriangulationResult",
    "solve_rays",
    "triangulate",
]
