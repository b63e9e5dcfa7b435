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


"""Provides heterogeneity cost models that turn an agent's travel distance
into an agent-specific cost used by the spatial partitioner
"""

from typing import Any, Dict, Mapping, Optional, Sequence, Type

import numpy as np
import shapely
from shapely import geometry

from ..errors import ConfigError, DimensionMismatchError


class HeterogeneityCost:
    """Base cost model; the cost of a domain location is the raw distance.

    Every subclass keeps the cost monotonic non-decreasing in the raw
    distance, so a closer location never costs more than a farther one
    for the same target cell.

    Args:
        locations (ndarray): (n, 2); Domain grid the cost vectors are aligned with
    """
    def __init__(self, locations: Optional[np.ndarray] = None, **kwargs: Any):
        if kwargs:
            raise ConfigError(
                f"Unknown {type(self).__name__} parameters: {sorted(kwargs)}")
        self.locations = None if locations is None else np.asarray(locations)

    def _check_distance(self, distance) -> np.ndarray:
        distance = np.asarray(distance, dtype=np.float64).reshape(-1)
        if self.locations is not None and len(distance) != len(self.locations):
            raise DimensionMismatchError(
                f"Expected {len(self.locations)} distances; got {len(distance)}")
        return distance

    def calculate_cost(self, agent_position, distance) -> np.ndarray:
        """Cost of reaching every domain location.

        Args:
            agent_position (tuple): (x, y); Current agent position
            distance (ndarray): (n,); Euclidean distance from the agent to every location

        Returns:
            cost (ndarray): (n,); Effective cost
        """
        return self._check_distance(distance).copy()


class SpeedCost(HeterogeneityCost):
    """Travel time: distance divided by the agent's speed factor.

    Args:
        speed_factor (float): Relative speed, larger is faster
    """
    def __init__(self, locations=None, speed_factor: float = 1.0, **kwargs):
        super().__init__(locations, **kwargs)
        if speed_factor <= 0:
            raise ConfigError(f"speed_factor must be positive; got {speed_factor}")
        self.speed_factor = float(speed_factor)

    def calculate_cost(self, agent_position, distance) -> np.ndarray:
        return self._check_distance(distance) / self.speed_factor


class BatteryLifeCost(HeterogeneityCost):
    """Inflates all costs while the battery is below a threshold.

    Args:
        battery_level (float): Remaining charge in [0, 1]
        threshold (float): Charge below which the penalty applies
        penalty (float): Relative cost increase applied when low on charge
    """
    def __init__(self, locations=None, battery_level: float = 1.0,
                 threshold: float = 0.2, penalty: float = 1.0, **kwargs):
        super().__init__(locations, **kwargs)
        if penalty < 0:
            raise ConfigError(f"penalty must be non-negative; got {penalty}")
        if not 0 <= threshold <= 1:
            raise ConfigError(f"threshold must be in [0, 1]; got {threshold}")
        self.threshold = float(threshold)
        self.penalty = float(penalty)
        self.set_battery_level(battery_level)

    def set_battery_level(self, battery_level: float) -> None:
        if not 0 <= battery_level <= 1:
            raise ConfigError(
                f"battery_level must be in [0, 1]; got {battery_level}")
        self.battery_level = float(battery_level)

    def calculate_cost(self, agent_position, distance) -> np.ndarray:
        distance = self._check_distance(distance)
        if self.battery_level < self.threshold:
            return distance * (1.0 + self.penalty)
        return distance.copy()


class TraversabilityCost(HeterogeneityCost):
    """Inflates the cost of locations close to hazard regions.

    A location at distance `d` from the nearest hazard costs
    `distance * (1 + hazard_weight * exp(-d / hazard_radius))`; locations
    inside a hazard get the full `1 + hazard_weight` factor.

    Args:
        locations (ndarray): (n, 2); Domain grid, required
        hazards (list): Hazard polygons, each a (v, 2) list of vertices
        hazard_weight (float): Maximum relative cost increase
        hazard_radius (float): Decay length of the inflation
    """
    def __init__(self, locations=None, hazards: Sequence = (),
                 hazard_weight: float = 1.0, hazard_radius: float = 1.0,
                 **kwargs):
        super().__init__(locations, **kwargs)
        if self.locations is None:
            raise ConfigError("TraversabilityCost requires the domain locations")
        if hazard_weight < 0:
            raise ConfigError(
                f"hazard_weight must be non-negative; got {hazard_weight}")
        if hazard_radius <= 0:
            raise ConfigError(
                f"hazard_radius must be positive; got {hazard_radius}")
        self.hazard_weight = float(hazard_weight)
        self.hazard_radius = float(hazard_radius)

        if len(hazards) == 0:
            self.multiplier = np.ones(len(self.locations))
            return
        try:
            region = shapely.union_all(
                [geometry.Polygon(vertices) for vertices in hazards])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid hazard polygon: {e}") from e
        points = shapely.points(self.locations)
        hazard_distance = shapely.distance(region, points)
        self.multiplier = 1.0 + self.hazard_weight * np.exp(
            -hazard_distance / self.hazard_radius)

    def calculate_cost(self, agent_position, distance) -> np.ndarray:
        distance = self._check_distance(distance)
        if len(distance) != len(self.multiplier):
            raise DimensionMismatchError(
                f"Expected {len(self.multiplier)} distances; got {len(distance)}")
        return distance * self.multiplier


class CompositeCost(HeterogeneityCost):
    """Applies several cost models in sequence.

    Args:
        factors (list): Cost models, applied first to last
    """
    def __init__(self, locations=None, factors: Sequence[HeterogeneityCost] = (),
                 **kwargs):
        super().__init__(locations, **kwargs)
        if len(factors) == 0:
            raise ConfigError("CompositeCost requires at least one factor")
        self.factors = list(factors)

    def calculate_cost(self, agent_position, distance) -> np.ndarray:
        cost = self._check_distance(distance)
        for factor in self.factors:
            cost = factor.calculate_cost(agent_position, cost)
        return cost


HETEROGENEITIES: Dict[str, Type[HeterogeneityCost]] = {
    'IDENTITY': HeterogeneityCost,
    'SPEED': SpeedCost,
    'BATTERY_LIFE': BatteryLifeCost,
    'TRAVERSABILITY': TraversabilityCost,
    'COMPOSITE': CompositeCost,
}


def get_heterogeneity(name: str) -> Type[HeterogeneityCost]:
    """
    Retrieves a heterogeneity cost class by its string name.

    Args:
        name (str): One of the keys of `HETEROGENEITIES`, e.g. 'SPEED'.

    Returns:
        Type[HeterogeneityCost]: The cost model class.

    Raises:
        KeyError: If the name is not a registered cost model.
    """
    if name not in HETEROGENEITIES:
        raise KeyError(f"Heterogeneity '{name}' not found. Available options: {list(HETEROGENEITIES.keys())}")
    return HETEROGENEITIES[name]


def make_heterogeneity(params: Optional[Mapping[str, Any]],
                       locations: Optional[np.ndarray] = None) -> HeterogeneityCost:
    """
    Builds a cost model from a parameter mapping.

    The mapping holds a `type` key naming the model and the model's keyword
    arguments. `COMPOSITE` models list their sub-models under `factors`.

    Args:
        params (Mapping): e.g. `{'type': 'SPEED', 'speed_factor': 2.0}`; `None`
                          gives the identity model.
        locations (ndarray): (n, 2); Domain grid.

    Returns:
        HeterogeneityCost: The configured cost model.

    Raises:
        ConfigError: If the type is unknown or the parameters are invalid.

    Usage:
        ```python
        cost = make_heterogeneity({'type': 'COMPOSITE',
                                   'factors': [{'type': 'SPEED', 'speed_factor': 2.0},
                                               {'type': 'BATTERY_LIFE', 'battery_level': 0.1}]},
                                  grid.locations)
        ```
    """
    if params is None:
        return HeterogeneityCost(locations)
    if isinstance(params, HeterogeneityCost):
        return params
    if not isinstance(params, Mapping):
        raise ConfigError(
            f"Heterogeneity parameters must be a mapping; got {type(params).__name__}")
    params = dict(params)
    name = str(params.pop('type', 'IDENTITY')).upper()
    try:
        cls = get_heterogeneity(name)
    except KeyError as e:
        raise ConfigError(str(e.args[0])) from e
    if cls is CompositeCost:
        params['factors'] = [make_heterogeneity(factor, locations)
                             for factor in params.get('factors', ())]
    try:
        return cls(locations, **params)
    except TypeError as e:
        raise ConfigError(f"Invalid {name} parameters: {e}") from e
