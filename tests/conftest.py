"""
Pytest configuration and fixtures for SkySpan tests.
"""
import pytest
import numpy as np
import sys
from pathlib import Path

# Add the package to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from skyspan import (
    CameraIntrinsics,
    CameraPose,
    DetectedFeature,
    PixelBox,
    RunContext,
    SkySpanConfig,
    TerrainGrid,
)


@pytest.fixture
def default_config():
    """Default SkySpan configuration for testing."""
    return SkySpanConfig()


@pytest.fixture
def video_config():
    """Short minimum duration so a few frames make an object significant."""
    return SkySpanConfig(object_min_duration_ms=50.0, frame_rate=30.0)


@pytest.fixture
def yolo_config():
    """Configuration for a one-box-per-animal detector."""
    return SkySpanConfig(detector="yolo", object_min_duration_ms=50.0)


@pytest.fixture
def image_config():
    """Configuration for unrelated still images."""
    return SkySpanConfig(input_is_video=False)


@pytest.fixture
def context(video_config):
    """Fresh run context with its own id sequences."""
    return RunContext(config=video_config)


@pytest.fixture
def intrinsics():
    return CameraIntrinsics()


@pytest.fixture
def nadir_pose():
    """Drone 80m up over flat ground at 50m, looking straight down."""
    return CameraPose(easting=0.0, northing=0.0, altitude=80.0, pitch=90.0)


@pytest.fixture
def flat_terrain():
    return TerrainGrid.flat(50.0, extent_m=1000.0, cell_size_m=10.0)


def hot_blob(num_pixels=60, heat=240):
    """Grey-scale values of a blob's hot pixels."""
    return np.full(num_pixels, heat, dtype=np.uint8)


def detection(x, y, width=10, height=10, num_pixels=60, heat=240):
    return DetectedFeature(PixelBox(x, y, width, height), hot_pixels=hot_blob(num_pixels, heat))


@pytest.fixture
def make_detection():
    """Factory for detections with a uniform hot blob."""
    return detection
