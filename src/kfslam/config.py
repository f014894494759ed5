# src/kfslam/config.py
"""Configuration for the tracking and mapping pipeline.

Defaults mirror a 640x480 pinhole camera at 30 fps. Values are read from a
YAML file with the nested sections ``camera``, ``orb`` and ``tracking``
(plus a top-level ``sensor``); anything missing keeps its default.
"""
from __future__ import annotations

import enum
import os
from dataclasses import asdict, dataclass, field, fields

import numpy as np
import yaml


@dataclass
class CameraConfig:
    width: int = 640
    height: int = 480
    fx: float = 500.0
    fy: float = 500.0
    cx: float = 320.0
    cy: float = 240.0
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    fps: float = 30.0
    bf: float = 40.0
    """Stereo baseline times fx; scales the close/far depth threshold."""

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]], dtype=np.float64)

    @property
    def dist_coeffs(self) -> np.ndarray:
        d = [self.k1, self.k2, self.p1, self.p2]
        if self.k3 != 0.0:
            d.append(self.k3)
        return np.array(d, dtype=np.float64)


@dataclass
class OrbConfig:
    n_features: int = 1000
    scale_factor: float = 2.0
    n_levels: int = 5
    ini_th_fast: int = 20
    min_th_fast: int = 7


@dataclass
class TrackingConfig:
    th_depth: float = 40.0
    """Close/far threshold, in multiples of the stereo baseline."""

    depth_map_factor: float = 5000.0
    """Raw depth units per meter."""

    use_pattern: bool = False
    pattern_cols: int = 9
    pattern_rows: int = 6
    pattern_cell_w: float = 0.025
    pattern_cell_h: float = 0.025

    align_image: bool = True
    search_radius: float = 32.0
    """Base projection search radius, in pixels at level 0."""

    madgwick_gain: float = 0.1
    movement_threshold: float = 0.02
    """Angle (rad) between last frame and IMU orientation that counts as a curve."""

    min_frames: int = 0
    max_frames: int | None = None
    """Defaults to the camera fps when unset."""


class SensorType(enum.Enum):
    MONOCULAR = "monocular"
    RGBD = "rgbd"
    MONOCULAR_IMU = "monocular_imu"


@dataclass
class SlamConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    orb: OrbConfig = field(default_factory=OrbConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    sensor: SensorType = SensorType.MONOCULAR

    @property
    def max_frames(self) -> int:
        if self.tracking.max_frames is not None:
            return int(self.tracking.max_frames)
        fps = self.camera.fps if self.camera.fps > 0 else 30.0
        return int(fps)

    @classmethod
    def from_dict(cls, cfg: dict) -> "SlamConfig":
        """Build from a nested dict. Raises ValueError/TypeError on bad values."""
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            raise TypeError(f"config root must be a mapping, got {type(cfg).__name__}")
        return cls(
            camera=_section(CameraConfig, cfg.get("camera")),
            orb=_section(OrbConfig, cfg.get("orb")),
            tracking=_section(TrackingConfig, cfg.get("tracking")),
            sensor=SensorType(cfg.get("sensor", SensorType.MONOCULAR.value)),
        )

    def to_dict(self) -> dict:
        return {
            "sensor": self.sensor.value,
            "camera": asdict(self.camera),
            "orb": asdict(self.orb),
            "tracking": asdict(self.tracking),
        }


def _section(klass, values: dict | None):
    if values is None:
        return klass()
    if not isinstance(values, dict):
        raise TypeError(f"section {klass.__name__} must be a mapping")
    known = {f.name: f for f in fields(klass)}
    kwargs = {}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"unknown key '{key}' in {klass.__name__}")
        default = getattr(klass(), key)
        if value is None or default is None:
            kwargs[key] = value
        elif isinstance(default, bool):
            kwargs[key] = _to_bool(key, value)
        else:
            kwargs[key] = type(default)(value)
    return klass(**kwargs)


_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def _to_bool(key: str, value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
    raise ValueError(f"'{key}' must be a boolean, got {value!r}")


class ConfigError(enum.Enum):
    FILE_NOT_FOUND = "file_not_found"
    PARSE_ERROR = "parse_error"
    INVALID_VALUE = "invalid_value"


@dataclass
class ConfigResult:
    config: SlamConfig | None
    error: ConfigError | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


def load_config(path: str) -> ConfigResult:
    """Read a YAML config file. Failures come back as ConfigResult.error."""
    if not os.path.isfile(path):
        return ConfigResult(None, ConfigError.FILE_NOT_FOUND, f"Failed to open file: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as ex:
        return ConfigResult(None, ConfigError.FILE_NOT_FOUND, f"Failed to open file: {path} ({ex})")
    except (yaml.YAMLError, UnicodeDecodeError) as ex:
        return ConfigResult(None, ConfigError.PARSE_ERROR, f"Parse error: {ex}")
    try:
        cfg = SlamConfig.from_dict(raw or {})
    except (TypeError, ValueError) as ex:
        return ConfigResult(None, ConfigError.INVALID_VALUE, str(ex))
    return ConfigResult(cfg)
