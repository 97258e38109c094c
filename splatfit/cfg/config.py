#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import json
import os
from dataclasses import dataclass, field, fields, asdict
from typing import List

from loguru import logger

from splatfit.errors import ConfigurationError


@dataclass
class OptimizationParams:
    iterations: int = 30_000

    # learning rates, means are multiplied by the scene scale
    means_lr: float = 1.6e-4
    means_lr_final: float = 1.6e-6
    means_lr_delay_mult: float = 0.01
    shs_lr: float = 2.5e-3
    opacity_lr: float = 5e-2
    scaling_lr: float = 5e-3
    rotation_lr: float = 1e-3

    lambda_dssim: float = 0.2
    opacity_reg: float = 0.0
    scale_reg: float = 0.0

    # density control
    min_opacity: float = 0.005
    growth_interval: int = 100
    reset_opacity: int = 3000
    opacity_reset_value: float = 0.01
    start_densify: int = 500
    stop_densify: int = 15_000
    grad_threshold: float = 0.0002
    percent_dense: float = 0.01
    split_factor: float = 1.6
    max_screen_size: float = 0.0
    max_cap: int = 0

    sh_degree: int = 3
    sh_degree_interval: int = 1000

    init_opacity: float = 0.1
    eps2d: float = 0.3
    near_plane: float = 0.01
    far_plane: float = 1e10
    tile_size: int = 16
    white_background: bool = False
    check_finite: bool = True
    seed: int = 42

    eval_steps: List[int] = field(default_factory=lambda: [7_000, 30_000])
    save_steps: List[int] = field(default_factory=lambda: [7_000, 30_000])

    def validate(self):
        if self.iterations <= 0:
            raise ConfigurationError(f"iterations must be positive, got {self.iterations}")
        for name in ('means_lr', 'shs_lr', 'opacity_lr', 'scaling_lr', 'rotation_lr'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}")
        if not 0.0 <= self.lambda_dssim <= 1.0:
            raise ConfigurationError(f"lambda_dssim must lie in [0, 1], got {self.lambda_dssim}")
        if not 0.0 <= self.min_opacity < 1.0:
            raise ConfigurationError(f"min_opacity must lie in [0, 1), got {self.min_opacity}")
        if not 0.0 < self.opacity_reset_value < 1.0:
            raise ConfigurationError(
                f"opacity_reset_value must lie in (0, 1), got {self.opacity_reset_value}")
        if self.growth_interval <= 0:
            raise ConfigurationError(f"growth_interval must be positive, got {self.growth_interval}")
        if self.start_densify > self.stop_densify:
            raise ConfigurationError(
                f"start_densify ({self.start_densify}) is after stop_densify ({self.stop_densify})")
        if self.reset_opacity < 0:
            raise ConfigurationError(f"reset_opacity must be non-negative, got {self.reset_opacity}")
        if not 0 <= self.sh_degree <= 3:
            raise ConfigurationError(f"sh_degree must lie in [0, 3], got {self.sh_degree}")
        if self.sh_degree_interval <= 0:
            raise ConfigurationError(
                f"sh_degree_interval must be positive, got {self.sh_degree_interval}")
        if not 0.0 < self.init_opacity < 1.0:
            raise ConfigurationError(f"init_opacity must lie in (0, 1), got {self.init_opacity}")
        if self.eps2d < 0:
            raise ConfigurationError(f"eps2d must be non-negative, got {self.eps2d}")
        if self.max_cap < 0:
            raise ConfigurationError(f"max_cap must be non-negative, got {self.max_cap}")
        if self.split_factor <= 1.0:
            raise ConfigurationError(f"split_factor must be > 1, got {self.split_factor}")
        if self.near_plane <= 0 or self.far_plane <= self.near_plane:
            raise ConfigurationError(
                f"invalid clip planes near={self.near_plane}, far={self.far_plane}")
        if self.tile_size <= 0:
            raise ConfigurationError(f"tile_size must be positive, got {self.tile_size}")
        return self


@dataclass
class DatasetConfig:
    data_path: str = ''
    output_path: str = 'output'
    resolution: int = -1
    test_every: int = 8
    preload: bool = True

    def validate(self):
        if not self.data_path:
            raise ConfigurationError("data_path is empty")
        if not os.path.exists(self.data_path):
            raise ConfigurationError(f"Data path does not exist: {self.data_path}")
        if self.test_every <= 0:
            raise ConfigurationError(f"test_every must be positive, got {self.test_every}")
        return self


def _coerce(name, expected, value):
    # bool is an int subclass, keep them apart
    if expected is bool:
        if not isinstance(value, bool):
            raise ConfigurationError(f"{name}: expected bool, got {value!r}")
        return value
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            if isinstance(value, float) and value.is_integer():
                return int(value)
            raise ConfigurationError(f"{name}: expected int, got {value!r}")
        return value
    if expected is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{name}: expected float, got {value!r}")
        return float(value)
    if expected is str:
        if not isinstance(value, str):
            raise ConfigurationError(f"{name}: expected str, got {value!r}")
        return value
    # List[int]
    if not isinstance(value, list) or not all(isinstance(v, int) for v in value):
        raise ConfigurationError(f"{name}: expected a list of integers, got {value!r}")
    return list(value)


def from_dict(cls, values):
    ''' Build a config dataclass from a flat dict, warning on unknown keys '''
    if not isinstance(values, dict):
        raise ConfigurationError(f"{cls.__name__}: expected a JSON object, got {type(values).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(values) - set(known))
    for key in unknown:
        logger.warning(f"Unknown parameter '{key}' in {cls.__name__} (will be ignored)")

    kwargs = {}
    for name, f in known.items():
        if name in values:
            expected = f.type if f.type in (int, float, bool, str) else list
            kwargs[name] = _coerce(name, expected, values[name])
    return cls(**kwargs).validate()


def read_json_file(path):
    if not os.path.exists(path):
        raise ConfigurationError(f"Error: {path} does not exist!")
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"JSON parsing error in {path}: {e}") from e


def load_optimization_params(path):
    params = from_dict(OptimizationParams, read_json_file(path))
    logger.info(f"Loaded optimization parameters from {path}")
    return params


def load_dataset_config(path):
    return from_dict(DatasetConfig, read_json_file(path))


def save_config(cfg, path):
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with open(path, 'w') as f:
        json.dump(asdict(cfg), f, indent=2)
