"""
SkySpan Triangulation Module

Multi-view location of a tracked object. Each distinct sighting of the object
gives a camera position and a ray through the object's pixel centre. The
object is the 3D point X best satisfying, for every sighting i,

    X - lambda_i * ray_i = camera_i

with one unknown depth lambda_i per sighting. Stacking the three coordinate
equations of the M sightings gives a 3M x (3 + M) linear system A x = C that
is solved in closed form with the pseudo-inverse (A^T A)^-1 A^T C. An optional
bounded robust least-squares pass (scipy) can polish the answer.

Near-parallel rays make A^T A singular; such systems, and answers that put
the object behind a camera, are reported as non-converged rather than raised.

Classes:
    TriangulationResult: Solver output for one object

Functions:
    build_ray_system: Assemble A and C from camera positions and rays
    solve_rays: Closed-form pseudo-inverse solve with degeneracy checks
    refine_solution: Bounded nonlinear refinement around the linear answer
    triangulate: Linear solve plus optional refinement
    select_distinct_features: Pick the sightings worth triangulating
    triangulate_object: Locate an object and its features from its sightings
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

# ============================================================================
# LOGGER
# ============================================================================
from loguru import logger

# ============================================================================
# INTERNAL IMPORTS
# ============================================================================
from .data_classes import TRIANGULATION_HEIGHT_ALGORITHM, UNKNOWN_HEIGHT
from .geometry import CameraIntrinsics, camera_down_angle, ray_direction


DEFAULT_MAX_CONDITION = 1e12
DEFAULT_MIN_DEPTH_M = 1.0


@dataclass
class TriangulationResult:
    """Outcome of a triangulation.

    Attributes:
        converged (bool): True when ``point`` is a finite, well-posed answer
        status (str): Short description of the outcome
        point (np.ndarray, optional): (easting, northing, elevation) of the object
        feature_points (np.ndarray, optional): (M, 3) point on each sighting's ray
        lambdas (np.ndarray, optional): Depth along each ray
        residual (float): RMS residual of the linear system
        refined (bool): Whether the nonlinear refinement was applied
    """

    converged: bool
    status: str
    point: Optional[np.ndarray] = None
    feature_points: Optional[np.ndarray] = None
    lambdas: Optional[np.ndarray] = None
    residual: float = float("inf")
    refined: bool = False

    @property
    def location_m(self) -> Optional[Tuple[float, float]]:
        if self.point is None:
            return None
        return float(self.point[0]), float(self.point[1])

    @property
    def elevation(self) -> Optional[float]:
        return None if self.point is None else float(self.point[2])


# ============================================================================
# LINEAR SOLVER
# ============================================================================

def build_ray_system(camera_positions: np.ndarray, rays: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assemble the linear system for M sightings.

    Args:
        camera_positions: (M, 3) camera (easting, northing, altitude)
        rays: (M, 3) ray directions

    Returns:
        A of shape (3M, 3 + M) with an identity block for X and a -ray column
        per sighting, and C of shape (3M,) with the stacked camera positions
    """
    n_views = camera_positions.shape[0]
    A = np.zeros((3 * n_views, 3 + n_views), dtype=np.float64)
    C = np.zeros(3 * n_views, dtype=np.float64)
    for i in range(n_views):
        rows = slice(3 * i, 3 * i + 3)
        A[rows, :3] = np.eye(3)
        A[rows, 3 + i] = -rays[i]
        C[rows] = camera_positions[i]
    return A, C


def solve_rays(camera_positions, rays,
               max_condition: float = DEFAULT_MAX_CONDITION,
               min_depth_m: float = DEFAULT_MIN_DEPTH_M) -> TriangulationResult:
    """
    Closed-form least-squares intersection of several rays.

    Args:
        camera_positions: (M, 3) camera positions, M >= 2
        rays: (M, 3) ray directions through the object
        max_condition: Larger condition numbers of A^T A count as singular
        min_depth_m: Every depth must be at least this far in front of its camera

    Returns:
        TriangulationResult. Non-converged when there are fewer than two rays,
        the rays are (near) parallel, the answer is not finite, or the point
        is not in front of every camera (rays from a single camera centre
        only meet at that centre).
    """
    cams = np.asarray(camera_positions, dtype=np.float64).reshape(-1, 3)
    rays = np.asarray(rays, dtype=np.float64).reshape(-1, 3)
    if cams.shape[0] != rays.shape[0]:
        raise ValueError("camera_positions and rays must have the same length")
    if cams.shape[0] < 2:
        return TriangulationResult(converged=False, status="fewer than 2 rays")
    if not (np.all(np.isfinite(cams)) and np.all(np.isfinite(rays))):
        return TriangulationResult(converged=False, status="non-finite input")

    A, C = build_ray_system(cams, rays)
    normal = A.T @ A
    condition = np.linalg.cond(normal)
    if not np.isfinite(condition) or condition > max_condition:
        return TriangulationResult(converged=False, status="singular system (parallel rays)")

    try:
        answer = np.linalg.inv(normal) @ A.T @ C
    except np.linalg.LinAlgError:
        return TriangulationResult(converged=False, status="singular system (parallel rays)")

    if not np.all(np.isfinite(answer)):
        return TriangulationResult(converged=False, status="non-finite solution")

    lambdas = answer[3:]
    residual = float(np.sqrt(np.mean((A @ answer - C) ** 2)))
    if np.any(lambdas < min_depth_m):
        return TriangulationResult(
            converged=False, status="point not in front of every camera",
            point=answer[:3].copy(), lambdas=lambdas.copy(), residual=residual,
        )

    return TriangulationResult(
        converged=True,
        status="linear",
        point=answer[:3].copy(),
        feature_points=cams + lambdas[:, None] * rays,
        lambdas=lambdas.copy(),
        residual=residual,
    )


# ============================================================================
# NONLINEAR REFINEMENT
# ============================================================================

def refine_solution(camera_positions, rays, linear: TriangulationResult,
                    xy_bound_m: float = 15.0, z_bound_m: float = 30.0,
                    max_nfev: int = 5000) -> TriangulationResult:
    """
    Polish a converged linear answer with a bounded robust least-squares fit.

    The object may move at most ``xy_bound_m`` horizontally and ``z_bound_m``
    vertically from the linear answer, and depths stay non-negative. A soft-L1
    loss down-weights sightings whose rays disagree with the rest.

    Returns:
        The refined result when the optimiser reports convergence, otherwise
        the linear result with the optimiser's termination status appended.
    """
    if not linear.converged:
        return linear

    cams = np.asarray(camera_positions, dtype=np.float64).reshape(-1, 3)
    rays = np.asarray(rays, dtype=np.float64).reshape(-1, 3)
    A, C = build_ray_system(cams, rays)

    x0 = np.concatenate([linear.point, linear.lambdas])
    lower = np.full(x0.shape, 0.0)
    upper = np.full(x0.shape, np.inf)
    lower[:2] = x0[:2] - xy_bound_m
    upper[:2] = x0[:2] + xy_bound_m
    lower[2] = x0[2] - z_bound_m
    upper[2] = x0[2] + z_bound_m

    fit = least_squares(
        lambda x: A @ x - C,
        x0,
        jac=lambda x: A,
        bounds=(lower, upper),
        loss="soft_l1",
        max_nfev=max_nfev,
    )
    if fit.status <= 0 or not np.all(np.isfinite(fit.x)):
        logger.debug(f"Triangulation refinement did not converge (status {fit.status}): {fit.message}")
        linear.status = f"linear (refinement status {fit.status})"
        return linear

    answer = fit.x
    lambdas = answer[3:]
    return TriangulationResult(
        converged=True,
        status=f"refined (status {fit.status})",
        point=answer[:3].copy(),
        feature_points=cams + lambdas[:, None] * rays,
        lambdas=lambdas.copy(),
        residual=float(np.sqrt(np.mean((A @ answer - C) ** 2))),
        refined=True,
    )


def triangulate(camera_positions, rays, max_condition: float = DEFAULT_MAX_CONDITION,
                min_depth_m: float = DEFAULT_MIN_DEPTH_M, refine: bool = False,
                xy_bound_m: float = 15.0, z_bound_m: float = 30.0) -> TriangulationResult:
    """Linear solve, optionally followed by refinement."""
    result = solve_rays(camera_positions, rays, max_condition=max_condition, min_depth_m=min_depth_m)
    if refine and result.converged:
        result = refine_solution(camera_positions, rays, result, xy_bound_m=xy_bound_m, z_bound_m=z_bound_m)
    return result


# ============================================================================
# OBJECT LEVEL
# ============================================================================

def select_distinct_features(features: Sequence, image_width: int, image_height: int) -> List:
    """
    Choose the sightings of an object that are worth triangulating.

    A real feature qualifies when it is significant, does not touch the image
    border, and its box centre differs from the last chosen feature's centre
    by at least 2 pixels on both axes. Real features that do not qualify lose
    any location or height they carried, so single-view estimates do not
    linger next to triangulated ones.
    """
    chosen = []
    compare = None
    for feature in features:
        if not feature.is_real:
            continue

        distinct = feature.significant and not feature.pixel_box.touches_edge(image_width, image_height)
        if distinct and compare is not None:
            dx = feature.center[0] - compare.center[0]
            dy = feature.center[1] - compare.center[1]
            distinct = abs(dx) >= 2 and abs(dy) >= 2

        if distinct:
            chosen.append(feature)
            compare = feature
        else:
            feature.clear_location_height()
    return chosen


def triangulate_object(tracked_object, intrinsics: CameraIntrinsics, terrain, config) -> TriangulationResult:
    """
    Locate an object from its distinct sightings.

    On success the object's location and height, and the location and height
    of every sighting used, are overwritten. Heights are the triangulated
    elevation minus the terrain elevation; where the terrain has no data the
    height stays unknown but the location is kept. Sightings without a pose,
    or taken with the camera less than ``min_camera_down_angle`` below the
    horizon, are left out.

    Args:
        tracked_object: TrackedObject to locate
        intrinsics: Camera intrinsics
        terrain: Terrain oracle
        config: SkySpanConfig

    Returns:
        The TriangulationResult (also stored on the object)
    """
    all_features = list(tracked_object.features.values())
    if sum(1 for f in all_features if f.is_real) < 2:
        return TriangulationResult(converged=False, status="fewer than 2 real features")

    usable = [
        f for f in all_features
        if f.pose is not None and camera_down_angle(f.pose) >= config.min_camera_down_angle
    ]
    features = select_distinct_features(usable, intrinsics.image_width, intrinsics.image_height)
    if len(features) < 2:
        return TriangulationResult(converged=False, status="fewer than 2 distinct features")

    cams = np.array([f.pose.position for f in features])
    rays = np.array([ray_direction(*f.center, f.pose, intrinsics) for f in features])
    result = triangulate(
        cams, rays,
        max_condition=config.triangulation_max_condition,
        min_depth_m=config.triangulation_min_depth_m,
        refine=config.refine_triangulation,
        xy_bound_m=config.refine_xy_bound_m,
        z_bound_m=config.refine_z_bound_m,
    )
    if not result.converged:
        logger.debug(f"Object {tracked_object.object_id}: triangulation failed ({result.status})")
        return result

    for feature, point, depth, ray in zip(features, result.feature_points, result.lambdas, rays):
        ground = terrain(point[0], point[1])
        height = UNKNOWN_HEIGHT if ground is None else point[2] - ground
        feature.set_location_height(
            (point[0], point[1]), height, TRIANGULATION_HEIGHT_ALGORITHM,
            range_m=float(depth * np.linalg.norm(ray)),
        )

    tracked_object.set_triangulation(result, terrain(*result.location_m))
    logger.debug(
        f"Object {tracked_object.object_id}: triangulated from {len(features)} views "
        f"to E={result.point[0]:.2f} N={result.point[1]:.2f} Z={result.point[2]:.2f} ({result.status})"
    )
    return result
