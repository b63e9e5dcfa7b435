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


"""Provides the informative location selection inside a partition cell
"""

from enum import Enum
from typing import Union

import numpy as np

from ..errors import ConfigError, DimensionMismatchError, EmptyPartitionError


class SamplingMode(Enum):
    VARIANCE = 'variance'
    UCB = 'ucb'

    @classmethod
    def parse(cls, mode: Union[str, int, 'SamplingMode']) -> 'SamplingMode':
        """Accepts a mode, its name, or the integer codes 0 (variance) and 1 (UCB)."""
        if isinstance(mode, cls):
            return mode
        if isinstance(mode, (int, np.integer)) and not isinstance(mode, bool):
            codes = {0: cls.VARIANCE, 1: cls.UCB}
            if int(mode) in codes:
                return codes[int(mode)]
        elif isinstance(mode, str):
            try:
                return cls(mode.lower())
            except ValueError:
                pass
        raise ConfigError(
            f"Unknown sampling mode {mode!r}. Available options: {[m.value for m in cls]}")


class SamplePolicy:
    """Picks the most informative location among a set of allowed indices.

    Scores:
        - `VARIANCE`: `variance[i]`
        - `UCB`: `mean[i] + coefficient * variance[i]`

    The highest score wins; ties go to the lowest index. The policy holds no
    state besides its configuration.

    Args:
        mode (SamplingMode or str or int): Scoring mode
        coefficient (float): Positive variance weight used in UCB mode
    """
    def __init__(self, mode: Union[SamplingMode, str, int] = SamplingMode.VARIANCE,
                 coefficient: float = 1.0):
        self.mode = SamplingMode.parse(mode)
        if not coefficient > 0:
            raise ConfigError(f"UCB coefficient must be positive; got {coefficient}")
        self.coefficient = float(coefficient)

    def get_scores(self, mean, variance) -> np.ndarray:
        mean = np.asarray(mean, dtype=np.float64).reshape(-1)
        variance = np.asarray(variance, dtype=np.float64).reshape(-1)
        if len(mean) != len(variance):
            raise DimensionMismatchError(
                f"Got {len(mean)} means and {len(variance)} variances")
        if self.mode is SamplingMode.UCB:
            return mean + self.coefficient * variance
        return variance

    def select_location(self, mean, variance, allowed_indices) -> int:
        """Index of the highest scoring allowed location.

        Args:
            mean (ndarray): (n,); Predicted mean over the domain
            variance (ndarray): (n,); Predicted variance over the domain
            allowed_indices (Iterable[int]): Candidate domain indices

        Returns:
            int: Selected domain index

        Raises:
            EmptyPartitionError: `allowed_indices` is empty
            DimensionMismatchError: An index is outside the domain
        """
        indices = np.unique(np.asarray(list(allowed_indices), dtype=int))
        if len(indices) == 0:
            raise EmptyPartitionError("No allowed location to select from")
        scores = self.get_scores(mean, variance)
        if indices[0] < 0 or indices[-1] >= len(scores):
            raise DimensionMismatchError(
                f"Allowed indices must be in [0, {len(scores)})")
        # np.unique sorts, so argmax picks the lowest index on ties
        return int(indices[np.argmax(scores[indices])])
