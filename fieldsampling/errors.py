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


"""Exceptions raised by the field sampling package.

Every error derives from `FieldSamplingError`:

- `ConfigError`: malformed or missing configuration; fatal at startup
- `DataError`: rejected training/prediction inputs (`InsufficientDataError`, `DimensionMismatchError`)
- `AgentStateError`: unknown agent or unknown agent position
- `PartitionError`: no agent positioned, or an empty partition cell
- `NumericError`: ill-conditioned kernel matrix
"""


class FieldSamplingError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(FieldSamplingError, ValueError):
    """Raised when the configuration is malformed or incomplete."""


class DataError(FieldSamplingError, ValueError):
    """Raised when input data is rejected. The model state is left unchanged."""


class InsufficientDataError(DataError):
    """Raised when training without samples or predicting before training."""


class DimensionMismatchError(DataError):
    """Raised when array shapes or lengths disagree."""


class AgentStateError(FieldSamplingError):
    """Raised for requests that reference an agent in an unusable state."""


class UnknownAgentError(AgentStateError, KeyError):
    """Raised when an agent name or id is not part of the configuration."""

    def __str__(self) -> str:
        # KeyError quotes its message otherwise
        return Exception.__str__(self)


class AgentPositionUnknownError(AgentStateError):
    """Raised when an agent has not reported a position yet."""


class PartitionError(FieldSamplingError):
    """Raised when the domain cannot be partitioned among the agents."""


class NoAgentPositionError(PartitionError):
    """Raised when no agent has a known position."""


class EmptyPartitionError(PartitionError):
    """Raised when a sample location is requested from an empty cell."""


class NumericError(FieldSamplingError, ValueError):
    """Raised when a kernel matrix cannot be factorized.

    Callers can retry with a larger noise variance (ridge) or fewer samples.
    """
