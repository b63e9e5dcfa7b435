# Copyright 2024 The SGP-Tools Contributors. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""Typed configuration of the sampling coordinator.

`load_config` turns a parsed mapping into a validated `SamplingConfig`;
`load_config_file` reads the mapping from a YAML file first. The expected
layout is::

    domain:            {locations: [[x, y], ...]}
                       or {bounds: [[x_min, x_max], [y_min, y_max]], resolution: r}
                       or {polygon: [[x, y], ...], resolution: r}
    model:             {components: [{lengthscales, signal_variance, noise_variance}, ...],
                        max_iterations, eps, min_responsibility, optimize_hparams, hparam_steps}
    retrain_threshold: int
    auto_retrain:      bool
    agents:            {name: {id: int, heterogeneity: {type: SPEED, speed_factor: 2.0}}}
    sampling:          {mode: variance | ucb | 0 | 1, ucb_coefficient: float}
    ground_truth:      {components: [...], locations: [...], values: [...]}   (optional)
    initial_samples:   {locations: [...], values: [...]}                      (optional)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import yaml
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .core.domain import DomainGrid
from .core.gpmm import ComponentParams
from .core.informative_sampling import SamplingMode
from .errors import ConfigError

logger = logging.getLogger(__name__)


def _is_integer(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.number)) and not isinstance(value, bool)


@dataclass
class ModelConfig:
    components: Sequence[ComponentParams]
    max_iterations: int = 100
    eps: float = 1e-3
    min_responsibility: float = 1e-6
    optimize_hparams: bool = False
    hparam_steps: int = 50


@dataclass
class AgentProfile:
    """Static description of one agent.

    Args:
        id (int): Agent id; partition ties go to the lowest id
        heterogeneity (Mapping): Cost model parameters, see `make_heterogeneity`
    """
    id: int
    heterogeneity: Optional[Mapping[str, Any]] = None


@dataclass
class SampleSet:
    locations: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        self.locations = np.asarray(self.locations, dtype=np.float64).reshape(-1, 2)
        self.values = np.asarray(self.values, dtype=np.float64).reshape(-1)


@dataclass
class GroundTruthConfig:
    """Diagnostic-only model of the true field."""
    components: Sequence[ComponentParams]
    samples: SampleSet


@dataclass
class SamplingConfig:
    domain: DomainGrid
    model: ModelConfig
    agents: Dict[str, AgentProfile]
    retrain_threshold: int
    mode: SamplingMode = SamplingMode.VARIANCE
    ucb_coefficient: float = 1.0
    auto_retrain: bool = True
    ground_truth: Optional[GroundTruthConfig] = None
    initial_samples: Optional[SampleSet] = None

    def validate(self) -> None:
        """Checks cross-field constraints.

        Raises:
            ConfigError: Listing every problem found.
        """
        errors = []
        if not isinstance(self.domain, DomainGrid):
            errors.append("domain must be a DomainGrid")
        if len(self.model.components) == 0:
            errors.append("model.components must not be empty")
        for key in ('max_iterations', 'hparam_steps'):
            value = getattr(self.model, key)
            if not (_is_integer(value) and value >= 1):
                errors.append(f"model.{key} must be a positive integer; got {value!r}")
        if not (_is_number(self.model.eps) and self.model.eps >= 0):
            errors.append(f"model.eps must be non-negative; got {self.model.eps!r}")
        if not (_is_number(self.model.min_responsibility) and
                0 < self.model.min_responsibility <= 1):
            errors.append(
                f"model.min_responsibility must be in (0, 1]; got {self.model.min_responsibility!r}")
        if not (_is_integer(self.retrain_threshold) and self.retrain_threshold >= 1):
            errors.append(
                f"retrain_threshold must be a positive integer; got {self.retrain_threshold!r}")
        if not self.agents:
            errors.append("at least one agent is required")
        ids = [profile.id for profile in self.agents.values()]
        if len(set(ids)) != len(ids):
            errors.append(f"agent ids must be unique; got {sorted(ids)}")
        if not (_is_number(self.ucb_coefficient) and self.ucb_coefficient > 0):
            errors.append(
                f"ucb_coefficient must be positive; got {self.ucb_coefficient}")
        for name, samples in (('ground_truth', self.ground_truth.samples
                               if self.ground_truth else None),
                              ('initial_samples', self.initial_samples)):
            if samples is None:
                continue
            if len(samples.locations) != len(samples.values):
                errors.append(
                    f"{name} has {len(samples.locations)} locations and {len(samples.values)} values")
            elif len(samples.values) == 0:
                errors.append(f"{name} must not be empty")
        if self.ground_truth is not None and len(self.ground_truth.components) == 0:
            errors.append("ground_truth.components must not be empty")
        if errors:
            raise ConfigError("Invalid configuration:\n  - " + "\n  - ".join(errors))


def _require(params: Mapping[str, Any], key: str, section: str) -> Any:
    if key not in params:
        raise ConfigError(f"Missing required field: {section}{key}")
    return params[key]


def _mapping(value: Any, section: str) -> Mapping[str, Any]:
    # An empty YAML section parses to None
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(
            f"{section} must be a mapping; got {type(value).__name__}")
    return value


def _load_components(items: Sequence[Mapping[str, Any]],
                     section: str) -> List[ComponentParams]:
    if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
        raise ConfigError(
            f"{section}components must be a list; got {type(items).__name__}")
    components = []
    for i, item in enumerate(items):
        try:
            item = _mapping(item, f"{section}components[{i}]")
            components.append(ComponentParams(**item))
        except TypeError as e:
            raise ConfigError(f"Invalid {section}components[{i}]: {e}") from e
    return components


def _load_domain(params: Mapping[str, Any]) -> DomainGrid:
    if 'locations' in params:
        return DomainGrid(params['locations'])
    if 'bounds' in params:
        return DomainGrid.from_bounds(params['bounds'],
                                      _require(params, 'resolution', 'domain.'))
    if 'polygon' in params:
        return DomainGrid.from_polygon(params['polygon'],
                                       _require(params, 'resolution', 'domain.'))
    raise ConfigError("domain requires one of: locations, bounds, polygon")


def _load_samples(params: Mapping[str, Any], section: str) -> SampleSet:
    try:
        return SampleSet(_require(params, 'locations', section),
                         _require(params, 'values', section))
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"Invalid {section[:-1]}: {e}") from e


def load_config(params: Mapping[str, Any]) -> SamplingConfig:
    """Builds and validates a `SamplingConfig` from a parsed mapping.

    Args:
        params (Mapping): Parsed configuration, see the module docstring.

    Returns:
        SamplingConfig: Validated configuration.

    Raises:
        ConfigError: If a field is missing or invalid.

    Usage:
        ```python
        config = load_config({
            'domain': {'bounds': [[0, 10], [0, 10]], 'resolution': 1.0},
            'model': {'components': [{'lengthscales': 2.0}]},
            'retrain_threshold': 10,
            'agents': {'jackal': {'id': 0}, 'pelican': {'id': 1}},
        })
        ```
    """
    if not isinstance(params, Mapping):
        raise ConfigError(f"Configuration must be a mapping; got {type(params).__name__}")

    domain = _load_domain(_mapping(_require(params, 'domain', ''), 'domain'))

    model_params = dict(_mapping(_require(params, 'model', ''), 'model'))
    components = _load_components(
        _require(model_params, 'components', 'model.'), 'model.')
    model_params.pop('components')
    try:
        model = ModelConfig(components=components, **model_params)
    except TypeError as e:
        raise ConfigError(f"Invalid model parameters: {e}") from e

    agents = {}
    for name, profile in _mapping(_require(params, 'agents', ''), 'agents').items():
        try:
            agents[str(name)] = AgentProfile(
                id=int(_require(profile, 'id', f'agents.{name}.')),
                heterogeneity=_mapping(profile.get('heterogeneity'),
                                       f'agents.{name}.heterogeneity') or None)
        except (TypeError, ValueError, AttributeError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid agent '{name}': {e}") from e

    sampling = _mapping(params.get('sampling'), 'sampling')
    ground_truth = None
    if params.get('ground_truth') is not None:
        gt_params = _mapping(params['ground_truth'], 'ground_truth')
        ground_truth = GroundTruthConfig(
            components=_load_components(
                _require(gt_params, 'components', 'ground_truth.'),
                'ground_truth.'),
            samples=_load_samples(gt_params, 'ground_truth.'))

    initial_samples = None
    if params.get('initial_samples') is not None:
        initial_samples = _load_samples(
            _mapping(params['initial_samples'], 'initial_samples'),
            'initial_samples.')

    config = SamplingConfig(
        domain=domain,
        model=model,
        agents=agents,
        retrain_threshold=_require(params, 'retrain_threshold', ''),
        mode=SamplingMode.parse(sampling.get('mode', SamplingMode.VARIANCE)),
        ucb_coefficient=sampling.get('ucb_coefficient', 1.0),
        auto_retrain=params.get('auto_retrain', True),
        ground_truth=ground_truth,
        initial_samples=initial_samples)
    config.validate()
    logger.info("Loaded configuration: %d domain points, %d components, %d agents",
                len(domain), len(components), len(agents))
    return config


def load_config_file(config_path: Union[str, Path],
                     overrides: Optional[List[str]] = None) -> SamplingConfig:
    """Reads a YAML configuration file and builds a `SamplingConfig` from it.

    Args:
        config_path (Union[str, Path]): Path to the YAML file.
        overrides (List[str]): Optional `key=value` overrides,
                               e.g. `["retrain_threshold=5"]`.

    Returns:
        SamplingConfig: Validated configuration.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the file cannot be parsed or the configuration is invalid.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        cfg = OmegaConf.load(config_path)
        if overrides:
            cfg = OmegaConf.merge(cfg, OmegaConf.from_dotlist(list(overrides)))
        params = OmegaConf.to_container(cfg, resolve=True)
    except (OmegaConfBaseException, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e
    logger.info("Read configuration file %s", config_path)
    return load_config(params)
