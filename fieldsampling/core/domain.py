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


"""Provides the fixed sampling domain and the append-only measurement log
"""

import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ..errors import ConfigError, DataError, DimensionMismatchError
from ..utils.misc import bounds2grid, polygon2grid


class DomainGrid:
    """Fixed, ordered set of N candidate 2-D locations.

    The index of a location in the grid is stable for the lifetime of the
    object and the backing array is read-only.

    Args:
        locations (ndarray): (n, 2); Candidate locations
    """
    def __init__(self, locations):
        locations = np.array(locations, dtype=np.float64)
        if locations.ndim != 2 or locations.shape[1] != 2:
            raise ConfigError(
                f"Domain locations must have shape (n, 2); got {locations.shape}")
        if len(locations) == 0:
            raise ConfigError("Domain must contain at least one location")
        if not np.all(np.isfinite(locations)):
            raise ConfigError("Domain locations must be finite")
        locations.setflags(write=False)
        self._locations = locations

    @classmethod
    def from_bounds(cls, bounds, resolution):
        """Grid covering the rectangle ((x_min, x_max), (y_min, y_max))."""
        try:
            locations = bounds2grid(bounds, resolution)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid domain bounds: {e}") from e
        return cls(locations)

    @classmethod
    def from_polygon(cls, vertices, resolution):
        """Grid restricted to the inside of a polygon."""
        try:
            locations = polygon2grid(np.asarray(vertices), resolution)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid domain polygon: {e}") from e
        return cls(locations)

    @property
    def locations(self) -> np.ndarray:
        return self._locations

    def __len__(self) -> int:
        return len(self._locations)

    def __getitem__(self, index) -> np.ndarray:
        return self._locations[index]


@dataclass(frozen=True)
class Unknown:
    """Position of an agent that has not reported one yet."""


@dataclass(frozen=True)
class Known:
    """Agent position in the domain coordinate frame."""
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Measurement:
    """A single point measurement reported by an agent."""
    location: Tuple[float, float]
    value: float
    valid: bool = True
    source_agent: Optional[str] = None


class MeasurementLog:
    """Append-only log of valid measurements.

    Locations and values live in numpy buffers whose capacity doubles when
    full, so appends are amortized O(1). Invalid measurements are kept in a
    separate list and never reach the training arrays.

    All methods are thread-safe; `snapshot` returns copies that stay
    consistent while other threads keep appending.

    Args:
        capacity (int): Initial buffer capacity
    """
    def __init__(self, capacity: int = 64):
        self._lock = threading.Lock()
        self._locations = np.empty((max(1, capacity), 2), dtype=np.float64)
        self._values = np.empty(max(1, capacity), dtype=np.float64)
        self._size = 0
        self._invalid: List[Measurement] = []

    def _grow(self, required: int) -> None:
        capacity = len(self._values)
        while capacity < required:
            capacity *= 2
        if capacity == len(self._values):
            return
        locations = np.empty((capacity, 2), dtype=np.float64)
        values = np.empty(capacity, dtype=np.float64)
        locations[:self._size] = self._locations[:self._size]
        values[:self._size] = self._values[:self._size]
        self._locations, self._values = locations, values

    def append(self, measurement: Measurement) -> bool:
        """Adds a measurement to the log.

        Returns:
            bool: True if the measurement was valid and appended to the
                training arrays, False if it was recorded as invalid.
        """
        if not measurement.valid:
            with self._lock:
                self._invalid.append(measurement)
            return False

        location = np.asarray(measurement.location, dtype=np.float64).reshape(-1)
        if location.shape != (2,):
            raise DimensionMismatchError(
                f"Measurement location must have 2 coordinates; got {location.shape[0]}")
        if not (np.all(np.isfinite(location)) and np.isfinite(measurement.value)):
            raise DataError("Measurement location and value must be finite")
        with self._lock:
            self._grow(self._size + 1)
            self._locations[self._size] = location
            self._values[self._size] = measurement.value
            self._size += 1
        return True

    def extend(self, locations, values) -> None:
        """Appends a batch of valid samples."""
        locations = np.asarray(locations, dtype=np.float64).reshape(-1, 2)
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if len(locations) != len(values):
            raise DimensionMismatchError(
                f"Got {len(locations)} locations and {len(values)} values")
        with self._lock:
            self._grow(self._size + len(values))
            self._locations[self._size:self._size + len(values)] = locations
            self._values[self._size:self._size + len(values)] = values
            self._size += len(values)

    def snapshot(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of the valid sample locations (n, 2) and values (n,)."""
        with self._lock:
            return (self._locations[:self._size].copy(),
                    self._values[:self._size].copy())

    @property
    def invalid(self) -> List[Measurement]:
        with self._lock:
            return list(self._invalid)

    @property
    def num_invalid(self) -> int:
        with self._lock:
            return len(self._invalid)

    def __len__(self) -> int:
        with self._lock:
            return self._size
