"""
SYMREG Configuration Loader

Handles loading, validation, and merging of configuration files.
Supports YAML configuration with preset system and config hierarchy.

Config Hierarchy (highest to lowest priority):
1. CLI overrides (individual args)
2. User config file (--config)
3. Config preset (--preset rigid)
4. Package defaults (symreg/configs/default.yaml)
"""

import math
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Sequence, Union
from copy import deepcopy

from ..utils.logging_config import get_logger

logger = get_logger("config")

# Paths to config directories
SYMREG_ROOT = Path(__file__).parent.parent
CONFIGS_DIR = SYMREG_ROOT / "configs"
DEFAULT_CONFIG_PATH = CONFIGS_DIR / "default.yaml"

VALID_TRANSFORMS = ["rigid", "affine"]
VALID_METRICS = ["mean_squared", "cross_correlation", "local_cross_correlation", "orientation_mean_squared"]
VALID_MODES = ["symmetric", "asymmetric"]
VALID_INIT_TYPES = ["mass", "geometric", "none"]


class ConfigurationError(ValueError):
    """Invalid registration configuration (raised before any image work)"""


@dataclass
class LinearConfig:
    """Multi-resolution linear registration configuration"""
    transform: str = "rigid"
    metric: str = "mean_squared"
    mode: str = "symmetric"
    init_type: str = "mass"
    max_iter: List[int] = field(default_factory=lambda: [300])
    scale_factor: List[float] = field(default_factory=lambda: [0.5, 1.0])
    sparsity: List[float] = field(default_factory=lambda: [0.0])
    smooth_factor: float = 1.0
    kernel_extent: List[int] = field(default_factory=lambda: [1, 1, 1])
    grad_tolerance: float = 1.0e-6
    step_tolerance: float = 1.0e-10
    midway_resolution: float = 1.0
    seed: int = 0
    revert_on_regression: bool = False


@dataclass
class IOConfig:
    """Input/Output configuration"""
    image1: Optional[str] = None
    image2: Optional[str] = None
    mask1: Optional[str] = None
    mask2: Optional[str] = None
    directions: Optional[str] = None
    init_matrix: Optional[str] = None
    output_transform: Optional[str] = None
    transformed: Optional[str] = None
    midway_prefix: Optional[str] = None
    log_stream: Optional[str] = None
    plot: Optional[str] = None


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class RegistrationConfig:
    """Complete registration configuration"""
    linear: LinearConfig = field(default_factory=LinearConfig)
    io: IOConfig = field(default_factory=IOConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    device: str = "cpu"


@dataclass
class LevelSettings:
    """Settings of one resolution level after broadcasting"""
    index: int
    scale_factor: float
    max_iter: int
    sparsity: float
    smooth_stdev: float


# ---------------------------------------------------------------------------
# Element validators (used eagerly by the registration setters)
# ---------------------------------------------------------------------------

def _as_list(values: Any) -> List:
    if isinstance(values, (list, tuple)):
        return list(values)
    if hasattr(values, "tolist"):
        values = values.tolist()
        return values if isinstance(values, list) else [values]
    return [values]


def check_max_iter(values: Union[int, Sequence[int]]) -> List[int]:
    values = _as_list(values)
    if not values:
        raise ConfigurationError("the max number of iterations must be defined for at least one level")
    checked = []
    for value in values:
        if isinstance(value, bool) or int(value) != value or value <= 0:
            raise ConfigurationError("the number of iterations must be positive")
        checked.append(int(value))
    return checked


def check_scale_factor(values: Union[float, Sequence[float]]) -> List[float]:
    values = _as_list(values)
    if not values:
        raise ConfigurationError("at least one multi-resolution level must be defined")
    for value in values:
        if not (0.0 < float(value) <= 1.0):
            raise ConfigurationError("the scale factor for each multi-resolution level must be between 0 and 1")
    return [float(v) for v in values]


def check_sparsity(values: Union[float, Sequence[float]]) -> List[float]:
    values = _as_list(values)
    if not values:
        raise ConfigurationError("the sparsity level must be defined for at least one level")
    for value in values:
        if not (0.0 <= float(value) <= 1.0):
            raise ConfigurationError("sparsity must be between 0.0 and 1.0")
    return [float(v) for v in values]


def check_smooth_factor(value: float) -> float:
    if not math.isfinite(float(value)) or float(value) < 0:
        raise ConfigurationError("the smoothing factor must be a finite non-negative number")
    return float(value)


def check_kernel_extent(values: Union[int, Sequence[int]]) -> List[int]:
    """Extents of at least one voxel, returned as given (one value applies to every axis)"""
    values = _as_list(values)
    if not values:
        raise ConfigurationError("the neighborhood kernel extent must be defined")
    for value in values:
        if isinstance(value, bool) or not math.isfinite(float(value)) or int(value) != value or value < 1:
            raise ConfigurationError("the neighborhood kernel extent must be at least 1 voxel")
    return [int(v) for v in values]


def check_midway_resolution(value: float) -> float:
    if not math.isfinite(float(value)) or float(value) <= 0:
        raise ConfigurationError("the midway space resolution must be positive")
    return float(value)


def check_tolerance(value: float, name: str) -> float:
    if not math.isfinite(float(value)) or float(value) < 0:
        raise ConfigurationError(f"the {name} must be a finite non-negative number")
    return float(value)


def check_choice(value: str, valid: List[str], name: str) -> str:
    if str(value).lower() not in valid:
        raise ConfigurationError(f"Invalid {name}: {value}. Must be one of {valid}")
    return str(value).lower()


def broadcast_levels(values: List, n_levels: int, what: str) -> List:
    """Expand a singleton per-level array to n_levels, or check its length"""
    if len(values) == 1:
        return values * n_levels
    if len(values) != n_levels:
        raise ConfigurationError(f"the {what} needs to be defined for each multi-resolution level")
    return list(values)


def validate_levels(
    max_iter: Sequence[int],
    scale_factor: Sequence[float],
    sparsity: Sequence[float],
    smooth_factor: float,
) -> List[LevelSettings]:
    """
    Validate and broadcast the per-level arrays

    Every per-level array must have one element (broadcast) or exactly
    one element per scale factor.

    Returns:
        LevelSettings per level, coarse to fine as configured
    """
    scale_factor = check_scale_factor(scale_factor)
    n_levels = len(scale_factor)
    max_iter = broadcast_levels(check_max_iter(max_iter), n_levels, "max number of iterations")
    sparsity = broadcast_levels(check_sparsity(sparsity), n_levels, "sparsity level")
    smooth_factor = check_smooth_factor(smooth_factor)

    return [
        LevelSettings(
            index=level,
            scale_factor=scale_factor[level],
            max_iter=max_iter[level],
            sparsity=sparsity[level],
            smooth_stdev=smooth_factor / (2.0 * scale_factor[level]),
        )
        for level in range(n_levels)
    ]


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries, with override taking precedence

    Args:
        base: Base dictionary
        override: Override dictionary

    Returns:
        Merged dictionary
    """
    result = deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)

    return result


def _coerce_type(value: Any, target_type: type) -> Any:
    """Coerce value to target type (handles YAML string parsing issues)"""
    if value is None:
        return value

    origin = getattr(target_type, '__origin__', None)
    if origin is not None:
        args = getattr(target_type, '__args__', ())
        if type(None) in args:
            for arg in args:
                if arg is not type(None):
                    return _coerce_type(value, arg)
        if origin in (list, List) and args:
            return [_coerce_type(v, args[0]) for v in _as_list(value)]
        return value

    if target_type == float and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    elif target_type == int and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    elif target_type == bool and isinstance(value, str):
        return value.lower() in ('true', '1', 'yes')

    return value


def _dict_to_dataclass(data: Dict, cls: type) -> Any:
    """
    Convert dictionary to dataclass instance

    Unknown keys are reported and ignored.
    """
    if not hasattr(cls, "__dataclass_fields__"):
        return data

    unknown = set(data) - set(cls.__dataclass_fields__)
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")

    field_values = {}
    for field_name, field_info in cls.__dataclass_fields__.items():
        if field_name in data:
            value = data[field_name]
            if hasattr(field_info.type, "__dataclass_fields__") and isinstance(value, dict):
                value = _dict_to_dataclass(value, field_info.type)
            else:
                value = _coerce_type(value, field_info.type)
            field_values[field_name] = value

    return cls(**field_values)


def load_yaml_config(path: Path) -> Dict:
    """Load a YAML configuration file"""
    path = Path(path)
    if path.exists():
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


def load_default_config() -> Dict:
    """Load the default configuration from YAML file"""
    if DEFAULT_CONFIG_PATH.exists():
        return load_yaml_config(DEFAULT_CONFIG_PATH)
    logger.warning(f"Default config not found at {DEFAULT_CONFIG_PATH}")
    return {}


def load_preset(preset_name: str) -> Dict:
    """
    Load a configuration preset from symreg/configs/

    Args:
        preset_name: Name of preset (e.g., 'rigid', 'affine'), with or without .yaml

    Raises:
        FileNotFoundError: If preset file doesn't exist
    """
    if not preset_name.endswith('.yaml'):
        preset_name = f"{preset_name}.yaml"

    preset_path = CONFIGS_DIR / preset_name

    if not preset_path.exists():
        raise FileNotFoundError(
            f"Config preset '{preset_name}' not found in {CONFIGS_DIR}. "
            f"Available presets: {list_available_presets()}"
        )

    logger.info(f"Loading config preset: {preset_name}")
    return load_yaml_config(preset_path)


def default_config() -> RegistrationConfig:
    """Get the default registration configuration"""
    return _dict_to_dataclass(load_default_config(), RegistrationConfig)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    preset: Optional[str] = None,
    overrides: Optional[Dict] = None,
) -> RegistrationConfig:
    """
    Load registration configuration with hierarchy support

    Config Priority (highest to lowest):
    1. overrides dict (from CLI args)
    2. config_path (--config)
    3. preset (--preset)
    4. package defaults (symreg/configs/default.yaml)

    Returns:
        Validated RegistrationConfig instance
    """
    config_dict = load_default_config()
    logger.debug(f"Loaded package defaults from {DEFAULT_CONFIG_PATH}")

    if preset:
        config_dict = _deep_merge(config_dict, load_preset(preset))

    if config_path:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        logger.info(f"Loading user config from: {config_path}")
        config_dict = _deep_merge(config_dict, load_yaml_config(config_path))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    config = _dict_to_dataclass(config_dict, RegistrationConfig)
    validate_config(config)
    return config


def validate_config(config: RegistrationConfig) -> None:
    """
    Validate configuration

    Raises:
        ConfigurationError: If configuration is invalid
    """
    linear = config.linear
    linear.transform = check_choice(linear.transform, VALID_TRANSFORMS, "transform type")
    linear.metric = check_choice(linear.metric, VALID_METRICS, "similarity metric")
    linear.mode = check_choice(linear.mode, VALID_MODES, "registration mode")
    linear.init_type = check_choice(linear.init_type, VALID_INIT_TYPES, "initialisation type")

    validate_levels(linear.max_iter, linear.scale_factor, linear.sparsity, linear.smooth_factor)
    linear.kernel_extent = check_kernel_extent(linear.kernel_extent)
    check_tolerance(linear.grad_tolerance, "gradient tolerance")
    check_tolerance(linear.step_tolerance, "step tolerance")
    linear.midway_resolution = check_midway_resolution(linear.midway_resolution)

    check_choice(config.logging.level, ["debug", "info", "warning", "error"], "logging level")

    logger.debug("Configuration validated successfully")


def list_available_presets() -> List[str]:
    """List available configuration presets (without .yaml extension)"""
    if not CONFIGS_DIR.exists():
        return []
    return sorted(f.stem for f in CONFIGS_DIR.glob("*.yaml") if f.stem != "default")
