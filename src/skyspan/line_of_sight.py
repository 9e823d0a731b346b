"""
SkySpan Line-of-Sight Module

Single-view location fallback: cast the ray through a feature's pixel centre
from the drone camera and walk it forward until it meets the terrain. Used
when an object does not yet have two distinct views to triangulate.

The estimate is only trusted when the camera looks well below the horizon
and the drone is well above the ground. Otherwise no result is returned.

Classes:
    TerrainOracle: Protocol for (easting, northing) -> elevation lookups
    TerrainGrid: Regular elevation raster with bilinear lookup

Functions:
    estimate_line_of_sight: Ground intersection of the ray through a pixel
    locate_feature_line_of_sight: Set a feature's location and height from its ray
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np
import numba as nb

# ============================================================================
# LOGGER
# ============================================================================
from loguru import logger

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .data_classes import LINE_OF_SIGHT_HEIGHT_ALGORITHM, LocationResult
from .geometry import CameraIntrinsics, CameraPose, camera_down_angle, ray_direction


# Ray walk outcomes
HIT = 0
LEFT_GRID = 1
NO_HIT = 2

MIN_STEPS_BEFORE_EDGE = 10
MAX_STEP_M = 5.0
DEFAULT_VERTICAL_UNIT_M = 0.2


class TerrainOracle(Protocol):
    """Anything that returns the ground elevation at a location, or None for no data."""

    def __call__(self, easting: float, northing: float) -> Optional[float]:
        ...


# ============================================================================
# NUMBA KERNELS
# ============================================================================

@nb.njit(cache=True)
def _grid_elevation(elevations, origin_easting, origin_northing, cell_size, easting, northing):
    """Bilinear elevation lookup. Returns (found, elevation)."""
    n_rows, n_cols = elevations.shape
    col = (easting - origin_easting) / cell_size
    row = (northing - origin_northing) / cell_size
    if col < 0.0 or row < 0.0 or col > n_cols - 1 or row > n_rows - 1:
        return False, 0.0

    c0 = min(int(col), n_cols - 2)
    r0 = min(int(row), n_rows - 2)
    fc = col - c0
    fr = row - r0
    z = (
        elevations[r0, c0] * (1.0 - fc) * (1.0 - fr)
        + elevations[r0, c0 + 1] * fc * (1.0 - fr)
        + elevations[r0 + 1, c0] * (1.0 - fc) * fr
        + elevations[r0 + 1, c0 + 1] * fc * fr
    )
    if np.isnan(z):
        return False, 0.0
    return True, z


@nb.njit(cache=True)
def _walk_grid(origin, direction, step, max_distance,
               elevations, origin_easting, origin_northing, cell_size):
    """
    Walk a unit ray over a terrain raster.

    Returns:
        (outcome, distance, easting, northing, elevation, steps). For LEFT_GRID
        the position is the last point that was still over the grid.
    """
    found, ground = _grid_elevation(
        elevations, origin_easting, origin_northing, cell_size, origin[0], origin[1]
    )
    if not found:
        return LEFT_GRID, 0.0, origin[0], origin[1], 0.0, 0

    prev_gap = origin[2] - ground
    prev_ground = ground
    distance = 0.0
    steps = 0
    while distance < max_distance:
        distance += step
        steps += 1
        point = origin + direction * distance
        found, ground = _grid_elevation(
            elevations, origin_easting, origin_northing, cell_size, point[0], point[1]
        )
        if not found:
            back = origin + direction * (distance - step)
            return LEFT_GRID, distance - step, back[0], back[1], prev_ground, steps

        gap = point[2] - ground
        if gap <= 0.0:
            # Interpolate the crossing between the last two samples
            fraction = 1.0
            if prev_gap - gap > 0.0:
                fraction = prev_gap / (prev_gap - gap)
            hit_distance = distance - step + fraction * step
            hit = origin + direction * hit_distance
            found, hit_ground = _grid_elevation(
                elevations, origin_easting, origin_northing, cell_size, hit[0], hit[1]
            )
            if not found:
                hit_ground = ground
            return HIT, hit_distance, hit[0], hit[1], hit_ground, steps

        prev_gap = gap
        prev_ground = ground

    return NO_HIT, distance, 0.0, 0.0, 0.0, steps


# ============================================================================
# TERRAIN GRID
# ============================================================================

@dataclass
class TerrainGrid:
    """Elevation raster.

    ``elevations[row, col]`` is the elevation at
    ``(origin_easting + col * cell_size_m, origin_northing + row * cell_size_m)``.
    NaN cells mean no data. ``vertical_unit_m`` is the elevation resolution
    and sets the finest step of a line-of-sight walk over the grid.

    Example:
        >>> terrain = TerrainGrid.flat(50.0, extent_m=500.0)
        >>> terrain(10.0, -20.0)
        50.0
    """

    elevations: np.ndarray
    origin_easting: float = 0.0
    origin_northing: float = 0.0
    cell_size_m: float = 1.0
    vertical_unit_m: float = DEFAULT_VERTICAL_UNIT_M

    def __post_init__(self):
        self.elevations = np.ascontiguousarray(self.elevations, dtype=np.float64)
        if self.elevations.ndim != 2 or min(self.elevations.shape) < 2:
            raise ValueError("elevations must be a 2D array of at least 2x2 cells")
        if self.cell_size_m <= 0:
            raise ValueError("cell_size_m must be positive")

    def __call__(self, easting: float, northing: float) -> Optional[float]:
        found, elevation = _grid_elevation(
            self.elevations, float(self.origin_easting), float(self.origin_northing),
            float(self.cell_size_m), float(easting), float(northing),
        )
        return float(elevation) if found else None

    @classmethod
    def flat(cls, elevation: float, center: Tuple[float, float] = (0.0, 0.0),
             extent_m: float = 2000.0, cell_size_m: float = 10.0) -> "TerrainGrid":
        """Level terrain covering a square of side ``2 * extent_m`` around ``center``."""
        cells = int(math.ceil(2 * extent_m / cell_size_m)) + 1
        return cls(
            elevations=np.full((cells, cells), float(elevation)),
            origin_easting=center[0] - extent_m,
            origin_northing=center[1] - extent_m,
            cell_size_m=cell_size_m,
        )

    def walk(self, origin: np.ndarray, direction: np.ndarray, step: float, max_distance: float):
        return _walk_grid(
            origin, direction, step, max_distance, self.elevations,
            float(self.origin_easting), float(self.origin_northing), float(self.cell_size_m),
        )


def _walk_oracle(terrain: TerrainOracle, origin: np.ndarray, direction: np.ndarray,
                 step: float, max_distance: float):
    """Same walk as _walk_grid for arbitrary terrain oracles."""
    ground = terrain(origin[0], origin[1])
    if ground is None:
        return LEFT_GRID, 0.0, origin[0], origin[1], 0.0, 0

    prev_gap = origin[2] - ground
    prev_ground = ground
    distance = 0.0
    steps = 0
    while distance < max_distance:
        distance += step
        steps += 1
        point = origin + direction * distance
        ground = terrain(point[0], point[1])
        if ground is None:
            back = origin + direction * (distance - step)
            return LEFT_GRID, distance - step, back[0], back[1], prev_ground, steps

        gap = point[2] - ground
        if gap <= 0.0:
            fraction = prev_gap / (prev_gap - gap) if prev_gap - gap > 0.0 else 1.0
            hit_distance = distance - step + fraction * step
            hit = origin + direction * hit_distance
            hit_ground = terrain(hit[0], hit[1])
            return HIT, hit_distance, hit[0], hit[1], ground if hit_ground is None else hit_ground, steps

        prev_gap = gap
        prev_ground = ground

    return NO_HIT, distance, 0.0, 0.0, 0.0, steps


# ============================================================================
# PUBLIC FUNCTIONS
# ============================================================================

def estimate_line_of_sight(pixel_x: float, pixel_y: float, pose: CameraPose,
                           intrinsics: CameraIntrinsics, terrain: TerrainOracle,
                           min_down_angle: float = 15.0,
                           min_height_above_ground_m: float = 10.0,
                           max_distance_m: float = 1000.0,
                           vertical_unit_m: Optional[float] = None) -> Optional[LocationResult]:
    """
    Find where the ray through a pixel meets the terrain.

    Args:
        pixel_x, pixel_y: Pixel position (usually a feature box centre)
        pose: Camera pose of the frame
        intrinsics: Camera intrinsics
        terrain: Elevation oracle (a TerrainGrid uses the compiled walk)
        min_down_angle: Cameras closer to the horizon give no result
        min_height_above_ground_m: Lower drones give no result
        max_distance_m: Longest distance walked along the ray
        vertical_unit_m: Finest step size (default: the grid's own
            ``vertical_unit_m``, or 0.2m for other oracles)

    Returns:
        LocationResult, or None when a precondition fails, the ray points
        above the horizon, misses the terrain, or leaves the terrain data
        within the first few steps. A ray that leaves the terrain data later
        gives a zero-confidence result at the last known point.
    """
    down_angle = camera_down_angle(pose)
    if down_angle < min_down_angle:
        logger.debug(f"Line of sight skipped: camera down angle {down_angle:.1f} < {min_down_angle}")
        return None

    ground_below = terrain(pose.easting, pose.northing)
    if ground_below is None:
        return None
    height_above_ground = pose.altitude - ground_below
    if height_above_ground < min_height_above_ground_m:
        logger.debug(f"Line of sight skipped: drone {height_above_ground:.1f}m above ground")
        return None

    direction = ray_direction(pixel_x, pixel_y, pose, intrinsics)
    direction = direction / np.linalg.norm(direction)
    if direction[2] >= -1e-6:
        return None

    if vertical_unit_m is None:
        if isinstance(terrain, TerrainGrid):
            vertical_unit_m = terrain.vertical_unit_m
        else:
            vertical_unit_m = DEFAULT_VERTICAL_UNIT_M
    step = max(vertical_unit_m, min(height_above_ground / 50.0, MAX_STEP_M))
    origin = pose.position
    if isinstance(terrain, TerrainGrid):
        outcome, distance, easting, northing, elevation, steps = terrain.walk(
            origin, direction, step, max_distance_m
        )
    else:
        outcome, distance, easting, northing, elevation, steps = _walk_oracle(
            terrain, origin, direction, step, max_distance_m
        )

    if outcome == NO_HIT:
        return None

    if outcome == LEFT_GRID:
        if steps < MIN_STEPS_BEFORE_EDGE:
            return None
        return LocationResult(
            location_m=(float(easting), float(northing)),
            elevation=float(elevation),
            confidence=0.0,
            method="LOS edge",
            distance_m=float(distance),
        )

    distance_factor = 1.0 - distance / max_distance_m
    height_factor = 1.0 - min(height_above_ground, 300.0) / 300.0
    confidence = float(np.clip(0.7 * distance_factor + 0.3 * height_factor, 0.0, 1.0))

    return LocationResult(
        location_m=(float(easting), float(northing)),
        elevation=float(elevation),
        confidence=confidence,
        method="LOS",
        distance_m=float(distance),
    )


def locate_feature_line_of_sight(feature, intrinsics: CameraIntrinsics, terrain: TerrainOracle,
                                 config) -> Optional[LocationResult]:
    """
    Set a feature's location and height from its own ray.

    The height is the intersection elevation minus the terrain elevation at
    the intersection, so it is close to zero by construction. Failures are
    recorded in ``feature.height_algorithm`` and leave the feature untouched
    otherwise.
    """
    if feature.pose is None:
        feature.set_height_algorithm_error("no pose")
        return None

    pixel_x, pixel_y = feature.center
    result = estimate_line_of_sight(
        pixel_x, pixel_y, feature.pose, intrinsics, terrain,
        min_down_angle=config.min_camera_down_angle,
        min_height_above_ground_m=config.min_height_above_ground_m,
        max_distance_m=config.los_max_distance_m,
    )
    if result is None:
        feature.set_height_algorithm_error("no line of sight")
        return None

    ground = terrain(*result.location_m)
    if ground is None:
        feature.set_height_algorithm_error("no terrain")
        return None

    feature.set_location_height(
        result.location_m,
        result.elevation - ground,
        LINE_OF_SIGHT_HEIGHT_ALGORITHM,
        range_m=result.distance_m,
    )
    return result
