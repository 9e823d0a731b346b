"""
Tests for the multi-view triangulation solver.
"""
import pytest
import numpy as np

from skyspan import CameraIntrinsics, CameraPose, project_point, ray_direction, solve_rays, triangulate
from skyspan.triangulation import build_ray_system, refine_solution


def sightings(point, poses, intrinsics):
    """Camera positions and rays of a point seen exactly from each pose."""
    cams, rays = [], []
    for pose in poses:
        pixel = project_point(point, pose, intrinsics)
        assert pixel is not None
        cams.append(pose.position)
        rays.append(ray_direction(pixel[0], pixel[1], pose, intrinsics))
    return np.array(cams), np.array(rays)


@pytest.fixture
def flight_poses():
    """A drone flying east at about 120m with a tilted camera."""
    return [
        CameraPose(-60.0, -10.0, 120.0, pitch=60.0, yaw=0.0),
        CameraPose(-30.0, -8.0, 121.0, roll=1.0, pitch=62.0, yaw=2.0),
        CameraPose(0.0, -5.0, 119.5, roll=-1.0, pitch=65.0, yaw=-3.0),
        CameraPose(30.0, -2.0, 120.5, pitch=70.0, yaw=5.0),
    ]


class TestSolveRays:
    """Closed-form solver."""

    def test_system_shape(self):
        A, C = build_ray_system(np.zeros((4, 3)), np.ones((4, 3)))
        assert A.shape == (12, 7)
        assert C.shape == (12,)
        np.testing.assert_allclose(A[3:6, :3], np.eye(3))
        np.testing.assert_allclose(A[3:6, 4], -np.ones(3))

    def test_recovers_point_from_exact_projections(self, flight_poses):
        intrinsics = CameraIntrinsics()
        target = np.array([5.0, 40.0, 52.0])
        cams, rays = sightings(target, flight_poses, intrinsics)

        result = solve_rays(cams, rays)

        assert result.converged
        np.testing.assert_allclose(result.point, target, rtol=1e-3)
        assert result.residual < 1e-6
        assert np.all(result.lambdas > 0)

    def test_two_views_are_enough(self, flight_poses):
        intrinsics = CameraIntrinsics()
        target = np.array([-10.0, 30.0, 48.0])
        cams, rays = sightings(target, [flight_poses[0], flight_poses[3]], intrinsics)

        result = solve_rays(cams, rays)
        assert result.converged
        np.testing.assert_allclose(result.point, target, rtol=1e-3)

    def test_known_geometry(self):
        cams = np.array([[0.0, 0.0, 10.0], [10.0, 0.0, 10.0]])
        rays = np.array([[1.0, 0.0, -1.0], [-1.0, 0.0, -1.0]])
        result = solve_rays(cams, rays)
        assert result.converged
        np.testing.assert_allclose(result.point, [5.0, 0.0, 5.0], atol=1e-9)
        np.testing.assert_allclose(result.lambdas, [5.0, 5.0], atol=1e-9)
        np.testing.assert_allclose(result.feature_points, [[5.0, 0.0, 5.0]] * 2, atol=1e-9)


class TestDegenerateInputs:
    """Degenerate geometry is reported, never raised."""

    def test_same_pose_same_pixel_is_singular(self):
        intrinsics = CameraIntrinsics()
        pose = CameraPose(0.0, 0.0, 100.0, pitch=90.0)
        ray = ray_direction(320.0, 256.0, pose, intrinsics)

        result = solve_rays([pose.position, pose.position], [ray, ray])

        assert not result.converged
        assert "singular" in result.status
        assert result.location_m is None

    def test_parallel_rays_are_singular(self):
        cams = np.array([[0.0, 0.0, 100.0], [10.0, 0.0, 100.0]])
        rays = np.array([[0.0, 0.0, -1.0], [0.0, 0.0, -1.0]])
        assert not solve_rays(cams, rays).converged

    def test_single_camera_centre_is_rejected(self):
        intrinsics = CameraIntrinsics()
        pose = CameraPose(0.0, 0.0, 100.0, pitch=90.0)
        rays = [ray_direction(px, 256.0, pose, intrinsics) for px in (300.0, 340.0)]

        result = solve_rays([pose.position, pose.position], rays)

        assert not result.converged
        assert "in front" in result.status

    def test_fewer_than_two_rays(self):
        result = solve_rays([[0.0, 0.0, 100.0]], [[0.0, 0.0, -1.0]])
        assert not result.converged
        assert result.status == "fewer than 2 rays"

    def test_non_finite_input(self):
        result = solve_rays([[0.0, 0.0, np.nan], [1.0, 0.0, 100.0]], [[0.0, 0.0, -1.0], [0.1, 0.0, -1.0]])
        assert not result.converged

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError, match="same length"):
            solve_rays(np.zeros((2, 3)), np.zeros((3, 3)))


class TestRefinement:
    """Bounded nonlinear polish."""

    def test_refinement_keeps_exact_answer(self, flight_poses):
        intrinsics = CameraIntrinsics()
        target = np.array([5.0, 40.0, 52.0])
        cams, rays = sightings(target, flight_poses, intrinsics)

        result = triangulate(cams, rays, refine=True)

        assert result.converged
        np.testing.assert_allclose(result.point, target, rtol=1e-3)

    def test_refinement_stays_within_bounds(self, flight_poses):
        intrinsics = CameraIntrinsics()
        target = np.array([5.0, 40.0, 52.0])
        cams, rays = sightings(target, flight_poses, intrinsics)
        # One sighting badly off
        rays[2] = rays[2] + np.array([0.3, -0.2, 0.0])

        linear = solve_rays(cams, rays)
        refined = refine_solution(cams, rays, linear, xy_bound_m=15.0, z_bound_m=30.0)

        assert refined.converged
        assert np.all(np.abs(refined.point[:2] - linear.point[:2]) <= 15.0 + 1e-6)
        assert abs(refined.point[2] - linear.point[2]) <= 30.0 + 1e-6

    def test_refining_failed_solve_is_noop(self):
        failed = solve_rays([[0.0, 0.0, 100.0]], [[0.0, 0.0, -1.0]])
        assert refine_solution([[0.0, 0.0, 100.0]], [[0.0, 0.0, -1.0]], failed) is failed
