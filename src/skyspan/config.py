"""
SkySpan Configuration System

This module provides the configuration classes and utilities for SkySpan.
The main SkySpanConfig class contains all tunable parameters for feature
tracking, object significance and location estimation, with defaults taken
from field use on thermal drone footage.

Classes:
    BaseConfig: Base configuration class with YAML loading capabilities
    SkySpanConfig: Main configuration class for the SkySpan tracker

Functions:
    load_local_yaml_config: Read a skyspan_config.yaml found near the caller
    merge_config_with_priority: runtime > local YAML > defaults
    load_config: Load and validate a configuration file
"""
# ============================================================================
# STANDARD IMPORTS
# ============================================================================
from dataclasses import dataclass
from typing import Dict, Any, Optional, Literal, Set, Type, TypeVar
from pathlib import Path
import yaml

# ============================================================================
# LOGGER
# ============================================================================
from loguru import logger

T = TypeVar("T", bound="BaseConfig")


@dataclass
class BaseConfig:
    """Base configuration class with YAML loading capabilities."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        result = {}
        for key, value in self.__dict__.items():
            if not key.startswith("_"):
                result[key] = value
        return result

    @classmethod
    def field_names(cls) -> Set[str]:
        """Names of the public configuration fields."""
        return {name for name in cls.__dataclass_fields__ if not name.startswith("_")}

    @classmethod
    def from_dict(cls: Type[T], config_dict: Dict[str, Any]) -> T:
        """Create configuration from dictionary."""
        # Filter out unknown fields
        valid_fields = cls.field_names()
        filtered_dict = {k: v for k, v in config_dict.items() if k in valid_fields}
        return cls(**filtered_dict)

    @classmethod
    def from_yaml(cls: Type[T], yaml_path: str) -> T:
        """Load configuration from YAML file."""
        yaml_file = Path(yaml_path)
        if not yaml_file.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(yaml_file, "r") as f:
            config_dict = yaml.safe_load(f) or {}

        return cls.from_dict(config_dict)

    def save_yaml(self, yaml_path: str) -> None:
        """Save configuration to YAML file."""
        with open(yaml_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)


@dataclass
class SkySpanConfig(BaseConfig):
    """
    Configuration for the SkySpan feature tracker and location estimators.

    SkySpan follows hot blobs ("features") detected in successive frames of
    drone video, groups them into persistent objects, decides which objects
    are likely animals rather than noise, and estimates where each object
    sits on the ground from the drone's camera poses.

    Quick Start Guide:
    ------------------
    For noisy detectors: increase feature_min_pixels and object_min_pixels
    For small or distant animals: decrease object_min_hot_density
    For flickering detections: increase object_max_unreal_blocks
    For still images rather than video: set input_is_video=False
    """

    # ============================================================================
    # FEATURE PARAMETERS
    # ============================================================================

    feature_min_pixels: int = 8
    """Minimum number of hot pixels for a single-frame feature to be significant.

    Features below this count are kept but never start a new object.
    """

    feature_min_density_perc: float = 0.0
    """Comb features must fill at least this percentage of their box with hot pixels
    to be significant. 0 disables the check; around 20 rejects large diffuse blobs.
    Not applied to yolo boxes."""

    feature_min_overlap_perc: float = 5.0
    """Minimum overlap (percent of either box's own area) to associate a feature
    with an object's expected location."""

    heat_threshold: int = 220
    """Grey-scale value (50 to 255) above which a pixel counts as hot.

    Heat sums are measured as the excess over this threshold.
    """

    # ============================================================================
    # OBJECT SIGNIFICANCE PARAMETERS
    # ============================================================================

    object_min_pixels: int = 5
    """An object needs more than this many hot pixels in one real feature.

    Good and great tiers are reached at 2x and 4x this value.
    """

    object_max_pixels: int = 0
    """Upper cap on hot pixels per real feature. 0 disables the cap.

    Very large blobs are usually vehicles, buildings or sun glare.
    """

    object_min_max_heat_pixels: int = 0
    """Minimum count of pixels at full heat (255) seen in one real feature."""

    object_min_hot_density: float = 0.1
    """Minimum fraction of the object's ellipse (0.785 x box area) that is hot."""

    object_min_duration_ms: float = 500.0
    """Duration an object must be seen for before it can be significant.

    Good and great tiers are reached at 2x and 4x this duration.
    Ignored for still images.
    """

    object_max_unreal_blocks: int = 5
    """Persistence window: number of blocks an object survives without a real feature.

    - 1-2 = Drop objects quickly (low false tracks, more fragmentation)
    - 5 = Default, bridges brief detector dropouts
    - 10+ = Long persistence (objects hidden by foliage)
    """

    search_higher_pixels: int = 20
    """Vertical shift of the expected box when a young object found no feature."""

    # ============================================================================
    # DETECTOR AND INPUT SETTINGS
    # ============================================================================

    detector: Literal["comb", "yolo"] = "comb"
    """Detector that produced the features.

    - "comb": threshold clustering; several blobs of one animal may merge
    - "yolo": neural detector; one box per animal per frame
    """

    one_feature_per_block: Optional[bool] = None
    """Allow an object only one real feature per block.

    When True a second real feature in the same block is refused.
    When False it is consumed (merged) into the first one.
    None derives the behaviour from the detector (yolo: True, comb: False).
    """

    input_is_video: bool = True
    """Whether blocks are consecutive video frames (True) or unrelated still images."""

    frame_rate: float = 30.0
    """Video frame rate, used to convert real-feature counts into durations."""

    # ============================================================================
    # CAMERA INTRINSICS
    # ============================================================================

    focal_length_mm: float = 9.1
    """Lens focal length in millimetres."""

    image_width: int = 640
    """Image width in pixels."""

    image_height: int = 512
    """Image height in pixels."""

    sensor_width_mm: float = 7.68
    """Sensor width in millimetres."""

    sensor_height_mm: float = 6.144
    """Sensor height in millimetres."""

    # ============================================================================
    # LOCATION ESTIMATION
    # ============================================================================

    min_camera_down_angle: float = 15.0
    """Cameras pointing closer than this to the horizon (degrees) give no location."""

    min_height_above_ground_m: float = 10.0
    """Drones lower than this above the terrain give no line-of-sight location."""

    los_max_distance_m: float = 1000.0
    """Maximum distance walked along a line-of-sight ray."""

    triangulation_max_condition: float = 1e12
    """Normal matrices with a larger condition number are treated as singular
    (near-parallel rays)."""

    triangulation_min_depth_m: float = 1.0
    """A triangulated point must lie at least this far in front of every camera.

    Rays from one camera centre (a hovering drone) only meet at the camera
    itself, so such solves are rejected here.
    """

    refine_triangulation: bool = False
    """Polish the linear triangulation with a bounded robust least-squares fit."""

    refine_xy_bound_m: float = 15.0
    """Horizontal search bound (metres) around the linear answer during refinement."""

    refine_z_bound_m: float = 30.0
    """Vertical search bound (metres) around the linear answer during refinement."""

    # ============================================================================
    # DEBUG SETTINGS
    # ============================================================================

    debug_timings: bool = False
    """Log time spent in each stage of the per-block pipeline."""

    @property
    def single_feature_per_block(self) -> bool:
        """Effective one-feature-per-block behaviour after detector defaults."""
        if self.one_feature_per_block is None:
            return self.detector == "yolo"
        return bool(self.one_feature_per_block)

    def validate(self) -> None:
        """Validate configuration parameters.

        Raises ValueError if any parameter is out of range.
        """
        if self.feature_min_pixels < 0:
            raise ValueError("feature_min_pixels must be non-negative")

        if not 0 <= self.feature_min_overlap_perc <= 100:
            raise ValueError("feature_min_overlap_perc must be between 0 and 100")

        if not 0 <= self.heat_threshold <= 255:
            raise ValueError("heat_threshold must be between 0 and 255")

        if self.object_min_pixels < 0:
            raise ValueError("object_min_pixels must be non-negative")

        if self.object_max_pixels < 0:
            raise ValueError("object_max_pixels must be non-negative")

        if self.object_max_unreal_blocks < 1:
            raise ValueError("object_max_unreal_blocks must be at least 1")

        if self.object_min_duration_ms <= 0:
            raise ValueError("object_min_duration_ms must be positive")

        if self.frame_rate <= 0:
            raise ValueError("frame_rate must be positive")

        if self.detector not in ["comb", "yolo"]:
            raise ValueError("Invalid detector")

        if self.focal_length_mm <= 0:
            raise ValueError("focal_length_mm must be positive")

        if min(self.image_width, self.image_height) <= 0:
            raise ValueError("image dimensions must be positive")

        if min(self.sensor_width_mm, self.sensor_height_mm) <= 0:
            raise ValueError("sensor dimensions must be positive")

        if not 0 <= self.min_camera_down_angle <= 90:
            raise ValueError("min_camera_down_angle must be between 0 and 90")


DEFAULT_CONFIG_NAME = "skyspan_config.yaml"


def load_local_yaml_config(yaml_filename: str = DEFAULT_CONFIG_NAME,
                           caller_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Read the first local YAML settings file found.

    Looks next to ``caller_file`` (a flight script, say), then in its parent
    directory, then in the working directory. Unreadable files and files
    that do not hold a mapping are skipped with a warning.

    Returns:
        The settings mapping, or an empty dict when no file is found
    """
    directories = []
    if caller_file:
        caller_dir = Path(caller_file).resolve().parent
        directories.extend([caller_dir, caller_dir.parent])
    directories.append(Path.cwd())

    for directory in directories:
        yaml_path = directory / yaml_filename
        if not yaml_path.is_file():
            continue
        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                settings = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Error reading local config file {yaml_path}: {e}")
            continue

        if isinstance(settings, dict):
            logger.debug(f"Loaded local YAML config from: {yaml_path}")
            return settings
        logger.warning(f"Local config file {yaml_path} does not contain a valid dictionary")

    return {}


def merge_config_with_priority(runtime_config: Optional[Dict[str, Any]] = None,
                               yaml_config_location: Optional[str] = None,
                               yaml_config_name: str = DEFAULT_CONFIG_NAME,
                               verbose_parameters: bool = False) -> SkySpanConfig:
    """
    Build the tracker configuration from layered sources.

    Priority: runtime_config > local YAML file > SkySpanConfig defaults.
    Unknown keys in either source are logged and ignored.

    Args:
        runtime_config: Settings passed in code
        yaml_config_location: File whose directory is searched first for the YAML file
        yaml_config_name: Name of the YAML file
        verbose_parameters: Log every resulting parameter

    Returns:
        Merged (unvalidated) SkySpanConfig
    """
    known = SkySpanConfig.field_names()
    layers = [
        ("YAML", load_local_yaml_config(yaml_config_name, caller_file=yaml_config_location)),
        ("runtime", runtime_config or {}),
    ]

    merged = {}
    for source, settings in layers:
        unknown = sorted(k for k in settings if k not in known)
        if unknown:
            logger.warning(f"Ignoring unknown {source} config keys: {', '.join(unknown)}")
        merged.update({k: v for k, v in settings.items() if k in known})

    config = SkySpanConfig.from_dict(merged)
    if verbose_parameters:
        lines = [f"     {key} = {value}" for key, value in config.to_dict().items()]
        logger.info("Creating SkySpanConfig with parameters:\n" + "\n".join(lines))
    return config


def load_config(config_path: Optional[str] = None) -> SkySpanConfig:
    """
    Load SkySpan configuration.

    Args:
        config_path: Path to YAML configuration file. If None, uses defaults.

    Returns:
        SkySpanConfig instance
    """
    if config_path is None:
        config = SkySpanConfig()
    else:
        config = SkySpanConfig.from_yaml(config_path)

    config.validate()
    return config
