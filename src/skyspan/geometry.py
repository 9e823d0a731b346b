"""
SkySpan Camera Geometry Module

Pinhole camera model used to turn a pixel in a drone image into a ray in
world space, and back.

World frame: x = easting, y = northing, z = altitude (metres).
Camera frame: x along image columns, y along image rows, z along the optical
axis. The camera orientation is R = Rz(yaw) . Ry(pitch + 90) . Rx(roll), with
angles in degrees. R maps world directions into the camera frame, so rays are
rotated back with R.T. With zero roll, ``pitch`` is the camera down angle
(90 looks straight down, 0 looks at the horizon) and yaw turns the image
about the optical axis. Roll tilts the optical axis about the easting axis,
so use camera_down_angle() rather than ``pitch`` for horizon checks.

Classes:
    CameraPose: Drone camera position and orientation for one block
    CameraIntrinsics: Focal length, image and sensor size, K and K inverse

Functions:
    rotation_matrix: Build R from roll, pitch and yaw (degrees)
    ray_direction: World-space ray through a pixel
    project_point: Pixel position of a world point, or None if behind the camera
    camera_down_angle: Angle of the optical axis below the horizon
    optical_axis: World-space direction the camera looks along
"""

# ============================================================================
# STANDARD IMPORTS
# ============================================================================
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import numba as nb


# ============================================================================
# NUMBA KERNELS
# ============================================================================

@nb.njit(fastmath=True, cache=True)
def rotation_matrix(roll_deg: float, pitch_deg: float, yaw_deg: float) -> np.ndarray:
    """
    Compose the camera rotation Rz(yaw) . Ry(pitch + 90) . Rx(roll).

    Args:
        roll_deg: Roll in degrees
        pitch_deg: Camera down angle in degrees
        yaw_deg: Yaw in degrees

    Returns:
        3x3 orthonormal rotation matrix (world to camera)
    """
    roll = math.radians(roll_deg)
    pitch = math.radians(pitch_deg + 90.0)
    yaw = math.radians(yaw_deg)

    rx = np.eye(3)
    rx[1, 1] = math.cos(roll)
    rx[1, 2] = -math.sin(roll)
    rx[2, 1] = math.sin(roll)
    rx[2, 2] = math.cos(roll)

    ry = np.eye(3)
    ry[0, 0] = math.cos(pitch)
    ry[0, 2] = math.sin(pitch)
    ry[2, 0] = -math.sin(pitch)
    ry[2, 2] = math.cos(pitch)

    rz = np.eye(3)
    rz[0, 0] = math.cos(yaw)
    rz[0, 1] = -math.sin(yaw)
    rz[1, 0] = math.sin(yaw)
    rz[1, 1] = math.cos(yaw)

    return np.dot(rz, np.dot(ry, rx))


@nb.njit(fastmath=True, cache=True)
def _back_project(pixel_x: float, pixel_y: float, k_inv: np.ndarray, rotation: np.ndarray) -> np.ndarray:
    """World direction R.T . K_inv . [u, v, 1]."""
    pixel = np.array([pixel_x, pixel_y, 1.0])
    camera_dir = np.dot(k_inv, pixel)
    return np.dot(np.ascontiguousarray(rotation.T), camera_dir)


@nb.njit(fastmath=True, cache=True)
def _project(point: np.ndarray, camera: np.ndarray, k: np.ndarray, rotation: np.ndarray) -> np.ndarray:
    """Homogeneous pixel K . R . (point - camera). Third entry is the depth."""
    camera_point = np.dot(rotation, point - camera)
    return np.dot(k, camera_point)


# ============================================================================
# CAMERA TYPES
# ============================================================================

@dataclass(frozen=True)
class CameraPose:
    """Drone camera pose at the time a block was captured.

    Attributes:
        easting (float): Camera easting in metres
        northing (float): Camera northing in metres
        altitude (float): Camera altitude in metres (same datum as the terrain)
        roll (float): Roll in degrees
        pitch (float): Camera down angle in degrees (90 = straight down)
        yaw (float): Yaw in degrees

    Example:
        >>> pose = CameraPose(easting=0.0, northing=0.0, altitude=120.0, pitch=90.0)
        >>> pose.position
        array([  0.,   0., 120.])
    """

    easting: float
    northing: float
    altitude: float
    roll: float = 0.0
    pitch: float = 90.0
    yaw: float = 0.0

    @property
    def position(self) -> np.ndarray:
        return np.array([self.easting, self.northing, self.altitude], dtype=np.float64)

    def rotation(self) -> np.ndarray:
        return rotation_matrix(float(self.roll), float(self.pitch), float(self.yaw))


@dataclass
class CameraIntrinsics:
    """Pinhole intrinsics of the drone camera.

    The defaults describe the thermal camera most footage was recorded with.
    Construction raises ValueError unless the focal length and all dimensions
    are positive, since K is undefined otherwise.
    """

    focal_length_mm: float = 9.1
    image_width: int = 640
    image_height: int = 512
    sensor_width_mm: float = 7.68
    sensor_height_mm: float = 6.144
    K: np.ndarray = field(init=False, repr=False)
    K_inv: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        if self.focal_length_mm <= 0:
            raise ValueError("focal_length_mm must be positive")
        if min(self.image_width, self.image_height) <= 0:
            raise ValueError("image dimensions must be positive")
        if min(self.sensor_width_mm, self.sensor_height_mm) <= 0:
            raise ValueError("sensor dimensions must be positive")

        # Focal length in pixels = focal length mm * pixels per mm
        self.K = np.array(
            [
                [self.fx, 0.0, self.image_width / 2.0],
                [0.0, self.fy, self.image_height / 2.0],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )
        self.K_inv = np.linalg.inv(self.K)

    @property
    def fx(self) -> float:
        return self.focal_length_mm * self.image_width / self.sensor_width_mm

    @property
    def fy(self) -> float:
        return self.focal_length_mm * self.image_height / self.sensor_height_mm

    @property
    def num_pixels(self) -> int:
        return self.image_width * self.image_height

    def ground_footprint_m2(self, range_m: float) -> float:
        """Area covered by the whole image on a surface ``range_m`` from the camera."""
        width_m = range_m * self.sensor_width_mm / self.focal_length_mm
        height_m = range_m * self.sensor_height_mm / self.focal_length_mm
        return width_m * height_m

    @classmethod
    def from_config(cls, config) -> "CameraIntrinsics":
        return cls(
            focal_length_mm=config.focal_length_mm,
            image_width=config.image_width,
            image_height=config.image_height,
            sensor_width_mm=config.sensor_width_mm,
            sensor_height_mm=config.sensor_height_mm,
        )


# ============================================================================
# PUBLIC FUNCTIONS
# ============================================================================

def ray_direction(pixel_x: float, pixel_y: float, pose: CameraPose,
                  intrinsics: CameraIntrinsics) -> np.ndarray:
    """
    World-space direction of the ray through a pixel.

    The vector is not normalised: its component along the optical axis is 1,
    so a scalar multiple of it is the depth in front of the camera.

    Args:
        pixel_x: Image column (may be fractional)
        pixel_y: Image row (may be fractional)
        pose: Camera pose of the frame
        intrinsics: Camera intrinsics

    Returns:
        (easting, northing, altitude) direction vector
    """
    return _back_project(float(pixel_x), float(pixel_y), intrinsics.K_inv, pose.rotation())


def project_point(point, pose: CameraPose,
                  intrinsics: CameraIntrinsics) -> Optional[Tuple[float, float]]:
    """Pixel (column, row) where a world point appears, or None if it is behind the camera."""
    homogeneous = _project(
        np.asarray(point, dtype=np.float64), pose.position, intrinsics.K, pose.rotation()
    )
    if homogeneous[2] <= 1e-9:
        return None
    return float(homogeneous[0] / homogeneous[2]), float(homogeneous[1] / homogeneous[2])


def camera_down_angle(pose: CameraPose) -> float:
    """Angle (degrees) of the optical axis below the horizon."""
    axis = optical_axis(pose)
    horizontal = math.hypot(axis[0], axis[1])
    return math.degrees(math.atan2(-axis[2], horizontal))


def optical_axis(pose: CameraPose) -> np.ndarray:
    """World-space direction of the optical axis (unit length)."""
    return pose.rotation()[2, :].copy()
