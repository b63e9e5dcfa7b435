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


"""Provides the coordinator that binds the field model, the spatial
partitioner and the sampling policy behind a thread-safe event interface.

Inbound events (delivered by the transport layer as plain calls):

- `handle_measurement(MeasurementEvent)`
- `handle_position(PositionEvent)`
- `handle_battery(BatteryEvent)`
- `handle_assignment(AssignmentRequest) -> AssignmentResponse`

Outbound data is pull-based: `prediction_snapshot()` and `partition_snapshot()`.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from .config import SamplingConfig, load_config, load_config_file
from .core.domain import Known, Measurement, MeasurementLog, Unknown
from .core.gpmm import GaussianProcessMixture
from .core.heterogeneity import (BatteryLifeCost, CompositeCost,
                                 HeterogeneityCost, make_heterogeneity)
from .core.informative_sampling import SamplePolicy
from .core.voronoi import SpatialPartitioner
from .errors import (AgentPositionUnknownError, AgentStateError, ConfigError,
                     DataError, FieldSamplingError, NumericError,
                     UnknownAgentError)
from .utils.metrics import get_nlpd, get_rmse, get_smse

logger = logging.getLogger(__name__)

MeasurementEvent = Measurement


class CoordinatorState(Enum):
    UNINITIALIZED = 'uninitialized'
    READY = 'ready'
    SERVING = 'serving'
    RETRAINING = 'retraining'


@dataclass(frozen=True)
class PositionEvent:
    """Agent position, already scaled to the domain coordinate frame."""
    agent: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class BatteryEvent:
    """Remaining battery charge of an agent, in [0, 1]."""
    agent: str
    level: float


@dataclass(frozen=True)
class AssignmentRequest:
    agent: str


@dataclass(frozen=True)
class AssignmentResponse:
    latitude: float
    longitude: float
    index: int


@dataclass(frozen=True)
class PredictionSnapshot:
    mean: np.ndarray
    variance: np.ndarray
    version: int


@dataclass(frozen=True)
class PartitionSnapshot:
    cells: Dict[int, np.ndarray]


def _battery_models(cost: HeterogeneityCost) -> List[BatteryLifeCost]:
    if isinstance(cost, BatteryLifeCost):
        return [cost]
    if isinstance(cost, CompositeCost):
        return [model for factor in cost.factors
                for model in _battery_models(factor)]
    return []


@dataclass
class AgentState:
    id: int
    name: str
    cost: HeterogeneityCost
    position: Any = Unknown()


class Coordinator:
    """Sequences measurement ingestion, retraining, position tracking and
    sampling location assignment.

    States: `UNINITIALIZED -> READY -> {SERVING <-> RETRAINING}`. The
    constructor either returns a `READY` coordinator or raises
    `ConfigError`. The first handled event moves it to `SERVING`.

    A retrain runs once `retrain_threshold` valid measurements have arrived
    since the previous one. It trains on a copy of the measurement log taken
    when the retrain starts; measurements arriving meanwhile count towards the
    next retrain. Assignment requests keep reading the previous prediction
    until the new one is committed.

    Args:
        config (SamplingConfig): Validated configuration
    """
    def __init__(self, config: SamplingConfig):
        self._state = CoordinatorState.UNINITIALIZED
        config.validate()

        self.config = config
        self.domain = config.domain
        self.retrain_threshold = int(config.retrain_threshold)
        self.auto_retrain = bool(config.auto_retrain)
        self.agent_ids: Dict[str, int] = {
            name: profile.id for name, profile in config.agents.items()}
        self.cost_models: Dict[str, HeterogeneityCost] = {
            name: make_heterogeneity(profile.heterogeneity,
                                     self.domain.locations)
            for name, profile in config.agents.items()}

        model_config = config.model
        self.model = GaussianProcessMixture(
            model_config.components,
            max_iterations=model_config.max_iterations,
            eps=model_config.eps,
            min_responsibility=model_config.min_responsibility,
            optimize_hparams=model_config.optimize_hparams,
            hparam_steps=model_config.hparam_steps,
            domain=self.domain)
        self.partitioner = SpatialPartitioner(
            self.domain,
            {self.agent_ids[name]: cost
             for name, cost in self.cost_models.items()})
        self.policy = SamplePolicy(config.mode, config.ucb_coefficient)
        self.log = MeasurementLog()

        self._agents: Dict[str, AgentState] = {}
        self._pending = 0
        self.num_retrains = 0
        self.num_failed_retrains = 0
        self.diagnostics: Dict[str, float] = {}
        self.rmse_history = []

        self._state_lock = threading.Lock()
        self._positions_lock = threading.Lock()
        self._retrain_lock = threading.Lock()

        self._gt_mean: Optional[np.ndarray] = None
        try:
            if config.ground_truth is not None:
                self._gt_mean = self._train_ground_truth(config)
            if config.initial_samples is not None:
                self.log.extend(config.initial_samples.locations,
                                config.initial_samples.values)
                self.model.train(*self.log.snapshot())
                self._update_diagnostics()
        except (DataError, NumericError) as e:
            raise ConfigError(f"Failed to initialize the field model: {e}") from e

        self._state = CoordinatorState.READY
        logger.info("Coordinator ready: %d domain points, %d agents, retrain every %d samples",
                    len(self.domain), len(self.agent_ids), self.retrain_threshold)

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> 'Coordinator':
        """Builds a coordinator from a parsed configuration mapping."""
        return cls(load_config(params))

    @classmethod
    def from_file(cls, config_path, overrides: Optional[List[str]] = None) -> 'Coordinator':
        """Builds a coordinator from a YAML configuration file."""
        return cls(load_config_file(config_path, overrides))

    def _train_ground_truth(self, config: SamplingConfig) -> np.ndarray:
        gt_model = GaussianProcessMixture(
            config.ground_truth.components,
            max_iterations=config.model.max_iterations,
            eps=config.model.eps,
            min_responsibility=config.model.min_responsibility,
            domain=self.domain)
        samples = config.ground_truth.samples
        gt_model.train(samples.locations, samples.values)
        logger.info("Trained ground truth model on %d samples", len(samples.values))
        return gt_model.prediction.mean

    @property
    def state(self) -> CoordinatorState:
        with self._state_lock:
            return self._state

    @property
    def pending_samples(self) -> int:
        """Valid measurements received since the last retrain started."""
        with self._state_lock:
            return self._pending

    def _start_serving(self) -> None:
        with self._state_lock:
            if self._state is CoordinatorState.READY:
                self._state = CoordinatorState.SERVING

    def _get_agent_id(self, name: str) -> int:
        if name not in self.agent_ids:
            raise UnknownAgentError(f"Unknown agent '{name}'")
        return self.agent_ids[name]

    def _positions(self) -> Dict[int, Any]:
        with self._positions_lock:
            return {state.id: state.position for state in self._agents.values()}

    def get_position(self, name: str):
        """`Known` position of the agent, or `Unknown` if it never reported."""
        self._get_agent_id(name)
        with self._positions_lock:
            state = self._agents.get(name)
            return Unknown() if state is None else state.position

    def handle_measurement(self, event: MeasurementEvent) -> bool:
        """Records a measurement and retrains once the threshold is reached.

        Invalid measurements are recorded separately and never counted. A
        valid measurement stays in the log even if the retrain it triggers
        fails; the failure is logged, the pending count is kept and the next
        measurement triggers another attempt.

        Returns:
            bool: True if a retrain ran and committed a new prediction
        """
        self._start_serving()
        with self._state_lock:
            appended = self.log.append(event)
            if appended:
                self._pending += 1
            due = self._pending >= self.retrain_threshold

        if not appended:
            logger.info("Dropped invalid measurement from %s", event.source_agent)
            return False
        if due and self.auto_retrain:
            try:
                return self.update()
            except FieldSamplingError as e:
                with self._state_lock:
                    self.num_failed_retrains += 1
                logger.error("Measurement stored, automatic retrain failed: %s", e)
        return False

    def handle_position(self, event: PositionEvent) -> None:
        """Records the latest position of an agent."""
        self._start_serving()
        agent_id = self._get_agent_id(event.agent)
        latitude, longitude = float(event.latitude), float(event.longitude)
        if not (np.isfinite(latitude) and np.isfinite(longitude)):
            raise DataError(f"Non-finite position from agent '{event.agent}'")
        with self._positions_lock:
            state = self._agents.get(event.agent)
            if state is None:
                state = AgentState(agent_id, event.agent,
                                   self.cost_models[event.agent])
                self._agents[event.agent] = state
            state.position = Known(latitude, longitude)

    def handle_battery(self, event: BatteryEvent) -> None:
        """Updates the battery level seen by the agent's `BATTERY_LIFE` cost model.

        Raises:
            UnknownAgentError: The agent is not configured
            DataError: The level is not in [0, 1]
            AgentStateError: The agent has no `BATTERY_LIFE` cost model
        """
        self._start_serving()
        self._get_agent_id(event.agent)
        level = float(event.level)
        if not 0 <= level <= 1:
            raise DataError(
                f"Battery level of agent '{event.agent}' must be in [0, 1]; got {level}")
        models = _battery_models(self.cost_models[event.agent])
        if not models:
            raise AgentStateError(
                f"Agent '{event.agent}' has no BATTERY_LIFE cost model")
        with self._positions_lock:
            for model in models:
                model.set_battery_level(level)
        logger.info("Battery level of '%s' set to %.2f", event.agent, level)

    def handle_assignment(self, request: AssignmentRequest) -> AssignmentResponse:
        """Selects the next sampling location of the requesting agent.

        Raises:
            UnknownAgentError: The agent is not configured
            AgentPositionUnknownError: The agent has not reported a position
            InsufficientDataError: The model has not been trained yet
            EmptyPartitionError: The agent owns no domain location
        """
        self._start_serving()
        try:
            agent_id = self._get_agent_id(request.agent)
            positions = self._positions()
            if isinstance(positions.get(agent_id, Unknown()), Unknown):
                raise AgentPositionUnknownError(
                    f"Agent '{request.agent}' has not reported a position")
            cell = self.partitioner.assign_cell(positions, agent_id)
            prediction = self.model.prediction
            index = self.policy.select_location(prediction.mean,
                                                prediction.variance, cell)
        except FieldSamplingError as e:
            logger.warning("Assignment request from '%s' failed: %s",
                           request.agent, e)
            raise

        latitude, longitude = self.domain[index]
        logger.info("Assigned location %d to '%s'", index, request.agent)
        return AssignmentResponse(float(latitude), float(longitude), int(index))

    def update(self) -> bool:
        """Runs a retrain if enough measurements are pending.

        Returns:
            bool: True if a retrain ran
        """
        return self._retrain(force=False) is not None

    def retrain(self) -> np.ndarray:
        """Retrains on the whole measurement log regardless of the threshold.

        Returns:
            log_likelihoods (ndarray): EM log-likelihood history
        """
        return self._retrain(force=True)

    def _retrain(self, force: bool) -> Optional[np.ndarray]:
        self._start_serving()
        with self._retrain_lock:
            with self._state_lock:
                if not force and self._pending < self.retrain_threshold:
                    return None
                locations, values = self.log.snapshot()
                consumed = self._pending
                self._pending = 0
                self._state = CoordinatorState.RETRAINING

            logger.info("Retraining on %d samples", len(values))
            try:
                history = self.model.train(locations, values)
            except FieldSamplingError as e:
                with self._state_lock:
                    self._pending += consumed
                    self._state = CoordinatorState.SERVING
                logger.warning("Retraining failed: %s", e)
                raise

            with self._state_lock:
                self.num_retrains += 1
                self._state = CoordinatorState.SERVING
            self._update_diagnostics()
            logger.info("Retrained on %d samples in %d EM iterations",
                        len(values), len(history))
            return history

    def _update_diagnostics(self) -> None:
        # Diagnostics never feed back into partitioning or selection
        if self._gt_mean is None:
            return
        prediction = self.model.prediction
        rmse = get_rmse(prediction.mean, self._gt_mean)
        diagnostics = {'rmse': rmse, 'version': prediction.version}
        if np.all(prediction.variance > 0):
            diagnostics['nlpd'] = get_nlpd(prediction.mean, self._gt_mean,
                                           prediction.variance)
            diagnostics['smse'] = get_smse(prediction.mean, self._gt_mean,
                                           prediction.variance)
        self.diagnostics = diagnostics
        self.rmse_history.append(rmse)
        logger.info("RMS error: %.6f", rmse)

    def prediction_snapshot(self) -> PredictionSnapshot:
        """Latest committed prediction over the domain.

        Raises:
            InsufficientDataError: No training has completed yet
        """
        prediction = self.model.prediction
        return PredictionSnapshot(prediction.mean, prediction.variance,
                                  prediction.version)

    def partition_snapshot(self) -> PartitionSnapshot:
        """Current partition of the domain among positioned agents.

        Raises:
            NoAgentPositionError: No agent has reported a position
        """
        return PartitionSnapshot(self.partitioner.partition(self._positions()))
