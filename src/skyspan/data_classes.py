"""
SkySpan Data Classes

This module defines the small value types shared across SkySpan: pixel
rectangles, detector output, feature tags and the records handed back to
callers.

Classes:
    PixelBox: Integer image rectangle with overlap helpers
    FeatureType: Real / Unreal / Consumed tag of a feature
    DetectorKind: Detector family that produced a feature
    HeatStats: Hot pixel statistics of a detected blob
    DetectedFeature: Input detection for one block
    LocationResult: Output of the line-of-sight estimator
    ObjectReport: Final per-run record of a significant object
    TrackerContractError: Raised when tracker invariants are violated

Note:
    Feature and TrackedObject live in feature.py and tracked_object.py
    since they carry tracking behaviour, not just data.
"""

import enum
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple


UNKNOWN_VALUE = -999
"""Sentinel for unknown integer quantities."""

UNKNOWN_HEIGHT = -2.0
"""Sentinel height (metres) for features and objects whose height is not known."""

# Height algorithm tags
UNREAL_COPY_HEIGHT_ALGORITHM = "UC"
LINE_OF_SIGHT_HEIGHT_ALGORITHM = "LOS"
TRIANGULATION_HEIGHT_ALGORITHM = "TRI"


class TrackerContractError(AssertionError):
    """A tracker invariant was broken. Indicates a logic bug, not bad input data."""


class FeatureType(enum.Enum):
    """Is the feature a genuine detection, a gap placeholder, or merged away."""

    REAL = "Real"
    UNREAL = "Unreal"
    CONSUMED = "Consumed"


class DetectorKind(enum.Enum):
    """Detector family. Drives detector-specific feature construction."""

    COMB = "comb"
    YOLO = "yolo"


@dataclass(frozen=True)
class PixelBox:
    """Axis-aligned image rectangle. Origin is the top left of the image.

    Attributes:
        x (int): Left column
        y (int): Top row
        width (int): Width in pixels
        height (int): Height in pixels

    Example:
        >>> box = PixelBox(100, 100, 10, 10)
        >>> box.center
        (105.0, 105.0)
    """

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    def union(self, other: "PixelBox") -> "PixelBox":
        """Smallest box containing both boxes."""
        left = min(self.x, other.x)
        top = min(self.y, other.y)
        right = max(self.right, other.right)
        bottom = max(self.bottom, other.bottom)
        return PixelBox(left, top, right - left, bottom - top)

    def intersection_area(self, other: "PixelBox") -> int:
        width = min(self.right, other.right) - max(self.x, other.x)
        height = min(self.bottom, other.bottom) - max(self.y, other.y)
        if width <= 0 or height <= 0:
            return 0
        return width * height

    def inflate(self, dx: int, dy: int) -> "PixelBox":
        """Grow the box by dx on the left and right and dy on the top and bottom."""
        return PixelBox(self.x - dx, self.y - dy, self.width + 2 * dx, self.height + 2 * dy)

    def offset(self, dx: int, dy: int) -> "PixelBox":
        return PixelBox(self.x + dx, self.y + dy, self.width, self.height)

    def touches_edge(self, image_width: int, image_height: int) -> bool:
        """True when the box lies on (or beyond) the outermost pixel of the image."""
        return (
            self.x <= 1
            or self.right >= image_width
            or self.y <= 1
            or self.bottom >= image_height
        )

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> "PixelBox":
        """Build from corner coordinates, as produced by most detectors."""
        left, top = int(round(x1)), int(round(y1))
        return cls(left, top, int(round(x2)) - left, int(round(y2)) - top)


@dataclass
class HeatStats:
    """Hot pixel statistics of a blob.

    Attributes:
        min_heat (int): Lowest hot pixel value
        max_heat (int): Highest hot pixel value
        num_hot_pixels (int): Number of hot pixels
        sum_hot_pixels (int): Sum of each hot pixel's excess over the heat threshold
        num_max_heat_pixels (int): Number of pixels at full heat (255)
    """

    min_heat: int = UNKNOWN_VALUE
    max_heat: int = UNKNOWN_VALUE
    num_hot_pixels: int = 0
    sum_hot_pixels: int = 0
    num_max_heat_pixels: int = 0


@dataclass
class DetectedFeature:
    """Detector output for one blob in one block.

    Either raw hot pixel values (``hot_pixels``) or precomputed ``heat_stats``
    may be supplied. Raw values take precedence.

    Example:
        >>> det = DetectedFeature(
        ...     pixel_box=PixelBox(100, 100, 10, 10),
        ...     hot_pixels=np.full(60, 240, dtype=np.uint8),
        ... )
    """

    pixel_box: PixelBox
    hot_pixels: Optional[np.ndarray] = None
    heat_stats: Optional[HeatStats] = None


@dataclass
class LocationResult:
    """Ground intersection found by the line-of-sight estimator.

    Attributes:
        location_m (tuple): (easting, northing) of the intersection in metres
        elevation (float): Terrain elevation at the intersection
        confidence (float): 0 (unreliable) to 1 (close, low drone)
        method (str): How the intersection was found
        distance_m (float): Distance walked along the ray
    """

    location_m: Tuple[float, float]
    elevation: float
    confidence: float
    method: str
    distance_m: float = 0.0


@dataclass
class ObjectReport:
    """Significant object summary returned at the end of a run.

    Heights and errors use UNKNOWN_HEIGHT when the object could not be located,
    so operators still see the object.
    """

    name: str
    object_id: int
    location_m: Optional[Tuple[float, float]]
    location_err_m: float
    height_m: float
    height_err_m: float
    size_cm2: float
    num_sig_blocks: int = 0
    attributes: str = ""
