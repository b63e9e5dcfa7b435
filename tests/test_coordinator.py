# tests/test_coordinator.py
"""Tests for the coordinator event handling and retraining."""

import threading

import numpy as np
import pytest
import yaml

from fieldsampling.coordinator import (AssignmentRequest, BatteryEvent,
                                       Coordinator, CoordinatorState,
                                       MeasurementEvent, PositionEvent)
from fieldsampling.core.domain import Known, Unknown
from fieldsampling.errors import (AgentPositionUnknownError, AgentStateError,
                                  ConfigError, DataError, InsufficientDataError,
                                  NoAgentPositionError, NumericError,
                                  UnknownAgentError)


def measurements(num, seed=0, source='jackal'):
    rng = np.random.default_rng(seed)
    X = rng.uniform(0, 4, size=(num, 2))
    y = np.sin(X[:, 0]) + np.cos(0.5 * X[:, 1])
    return [MeasurementEvent((x[0], x[1]), v, source_agent=source)
            for x, v in zip(X, y)]


@pytest.fixture
def coordinator(config_dict):
    return Coordinator.from_mapping(config_dict)


@pytest.fixture
def trained(config_dict, initial_samples):
    config_dict["initial_samples"] = initial_samples
    return Coordinator.from_mapping(config_dict)


class TestLifecycle:

    def test_ready_after_construction(self, coordinator):
        assert coordinator.state is CoordinatorState.READY
        assert coordinator.pending_samples == 0
        assert coordinator.num_retrains == 0
        assert not coordinator.model.trained

    def test_failed_inline_retrain_keeps_measurement(self, coordinator, monkeypatch):
        train = coordinator.model.train

        def failing_train(locations, values):
            raise NumericError("Kernel matrix is not positive definite")

        monkeypatch.setattr(coordinator.model, "train", failing_train)
        events = measurements(4)
        for event in events[:3]:
            assert not coordinator.handle_measurement(event)
        assert len(coordinator.log) == 3
        assert coordinator.pending_samples == 3
        assert coordinator.num_failed_retrains == 1
        assert coordinator.num_retrains == 0
        assert coordinator.state is CoordinatorState.SERVING

        monkeypatch.setattr(coordinator.model, "train", train)
        assert coordinator.handle_measurement(events[3])
        assert coordinator.model.num_samples == 4
        assert coordinator.pending_samples == 0

    def test_explicit_retrain_failure_propagates(self, trained, monkeypatch):
        def failing_train(locations, values):
            raise NumericError("Kernel matrix is not positive definite")

        monkeypatch.setattr(trained.model, "train", failing_train)
        with pytest.raises(NumericError):
            trained.retrain()
        assert trained.prediction_snapshot().version == 1

    def test_first_event_starts_serving(self, coordinator):
        coordinator.handle_position(PositionEvent('jackal', 1.0, 1.0))
        assert coordinator.state is CoordinatorState.SERVING

    def test_invalid_config_raises(self, config_dict):
        config_dict["retrain_threshold"] = 0
        with pytest.raises(ConfigError):
            Coordinator.from_mapping(config_dict)

    def test_initial_samples_trained(self, trained):
        assert trained.model.trained
        assert trained.model.num_samples == 10
        assert len(trained.log) == 10
        assert trained.pending_samples == 0
        assert trained.prediction_snapshot().version == 1


class TestPositions:

    def test_unknown_until_reported(self, coordinator):
        assert coordinator.get_position('jackal') == Unknown()
        coordinator.handle_position(PositionEvent('jackal', 1.0, 2.0))
        assert coordinator.get_position('jackal') == Known(1.0, 2.0)
        assert coordinator.get_position('pelican') == Unknown()

    def test_latest_position_wins(self, coordinator):
        coordinator.handle_position(PositionEvent('jackal', 1.0, 2.0))
        coordinator.handle_position(PositionEvent('jackal', 3.0, 0.0))
        assert coordinator.get_position('jackal') == Known(3.0, 0.0)

    def test_unknown_agent(self, coordinator):
        with pytest.raises(UnknownAgentError):
            coordinator.handle_position(PositionEvent('husky', 1.0, 1.0))
        with pytest.raises(UnknownAgentError):
            coordinator.get_position('husky')

    def test_non_finite_position(self, coordinator):
        with pytest.raises(DataError):
            coordinator.handle_position(PositionEvent('jackal', np.nan, 1.0))
        assert coordinator.get_position('jackal') == Unknown()

    def test_partition_without_positions(self, coordinator):
        with pytest.raises(NoAgentPositionError):
            coordinator.partition_snapshot()

    def test_partition_is_total(self, coordinator):
        coordinator.handle_position(PositionEvent('jackal', 0.0, 0.0))
        coordinator.handle_position(PositionEvent('pelican', 4.0, 4.0))
        cells = coordinator.partition_snapshot().cells
        assert set(cells) == {0, 1}
        indices = np.concatenate(list(cells.values()))
        assert np.array_equal(np.sort(indices), np.arange(25))


class TestMeasurements:

    def test_threshold_triggers_retrain(self, coordinator):
        events = measurements(3)
        assert not coordinator.handle_measurement(events[0])
        assert not coordinator.handle_measurement(events[1])
        assert coordinator.pending_samples == 2
        assert coordinator.handle_measurement(events[2])
        assert coordinator.num_retrains == 1
        assert coordinator.pending_samples == 0
        assert coordinator.model.num_samples == 3
        assert coordinator.state is CoordinatorState.SERVING
        assert coordinator.prediction_snapshot().version == 1

    def test_invalid_measurements_not_counted(self, coordinator):
        events = measurements(2)
        for event in events:
            coordinator.handle_measurement(event)
        invalid = MeasurementEvent((1.0, 1.0), 5.0, valid=False)
        for _ in range(5):
            assert not coordinator.handle_measurement(invalid)
        assert coordinator.pending_samples == 2
        assert coordinator.num_retrains == 0
        assert coordinator.log.num_invalid == 5
        assert len(coordinator.log) == 2

    def test_retrain_bumps_version(self, trained):
        for event in measurements(3, seed=1):
            trained.handle_measurement(event)
        snapshot = trained.prediction_snapshot()
        assert snapshot.version == 2
        assert trained.model.num_samples == 13
        assert len(snapshot.mean) == len(snapshot.variance) == 25

    def test_manual_update(self, config_dict):
        config_dict["auto_retrain"] = False
        coordinator = Coordinator.from_mapping(config_dict)
        for event in measurements(4):
            assert not coordinator.handle_measurement(event)
        assert coordinator.num_retrains == 0
        assert coordinator.pending_samples == 4
        assert coordinator.update()
        assert coordinator.num_retrains == 1
        assert not coordinator.update()

    def test_forced_retrain_on_empty_log(self, coordinator):
        with pytest.raises(InsufficientDataError):
            coordinator.retrain()
        assert coordinator.state is CoordinatorState.SERVING
        assert coordinator.num_retrains == 0
        assert not coordinator.model.trained


class TestAssignment:

    def test_before_training(self, coordinator):
        coordinator.handle_position(PositionEvent('jackal', 1.0, 1.0))
        with pytest.raises(InsufficientDataError):
            coordinator.handle_assignment(AssignmentRequest('jackal'))

    def test_unknown_agent(self, trained):
        with pytest.raises(UnknownAgentError):
            trained.handle_assignment(AssignmentRequest('husky'))

    def test_unknown_position(self, trained):
        trained.handle_position(PositionEvent('pelican', 1.0, 1.0))
        with pytest.raises(AgentPositionUnknownError):
            trained.handle_assignment(AssignmentRequest('jackal'))

    def test_assignment_in_own_cell(self, trained):
        trained.handle_position(PositionEvent('jackal', 0.0, 0.0))
        trained.handle_position(PositionEvent('pelican', 4.0, 4.0))
        cells = trained.partition_snapshot().cells
        snapshot = trained.prediction_snapshot()
        for name, agent_id in (('jackal', 0), ('pelican', 1)):
            response = trained.handle_assignment(AssignmentRequest(name))
            assert response.index in cells[agent_id]
            cell = cells[agent_id]
            assert snapshot.variance[response.index] == snapshot.variance[cell].max()
            assert np.allclose([response.latitude, response.longitude],
                               trained.domain[response.index])

    def test_assignment_is_repeatable(self, trained):
        trained.handle_position(PositionEvent('jackal', 2.0, 2.0))
        first = trained.handle_assignment(AssignmentRequest('jackal'))
        second = trained.handle_assignment(AssignmentRequest('jackal'))
        assert first == second


class TestGroundTruth:

    def test_diagnostics_recorded(self, config_dict, initial_samples, samples):
        X, y = samples
        config_dict["initial_samples"] = initial_samples
        config_dict["ground_truth"] = {
            "components": config_dict["model"]["components"],
            "locations": X.tolist(),
            "values": y.tolist(),
        }
        coordinator = Coordinator.from_mapping(config_dict)
        assert coordinator.diagnostics['version'] == 1
        assert coordinator.diagnostics['rmse'] >= 0.0
        assert coordinator.diagnostics['smse'] >= 0.0
        assert np.isfinite(coordinator.diagnostics['nlpd'])
        assert len(coordinator.rmse_history) == 1

        for event in measurements(3, seed=2):
            coordinator.handle_measurement(event)
        assert len(coordinator.rmse_history) == 2
        assert coordinator.diagnostics['version'] == 2

    def test_diagnostics_do_not_change_assignments(self, config_dict,
                                                   initial_samples, samples):
        X, y = samples
        config_dict["initial_samples"] = initial_samples
        plain = Coordinator.from_mapping(config_dict)
        config_dict["ground_truth"] = {
            "components": config_dict["model"]["components"],
            "locations": X.tolist(),
            "values": y.tolist(),
        }
        with_truth = Coordinator.from_mapping(config_dict)
        for coordinator in (plain, with_truth):
            coordinator.handle_position(PositionEvent('jackal', 1.0, 3.0))
        assert plain.handle_assignment(AssignmentRequest('jackal')) == \
            with_truth.handle_assignment(AssignmentRequest('jackal'))
        assert plain.diagnostics == {}


class TestConcurrency:

    def test_concurrent_ingestion_and_retrain(self, config_dict):
        config_dict["retrain_threshold"] = 10**6
        coordinator = Coordinator.from_mapping(config_dict)
        num_producers, per_producer = 4, 250
        started = threading.Event()
        errors = []

        def produce(seed):
            try:
                for event in measurements(per_producer, seed=seed):
                    coordinator.handle_measurement(event)
                    if len(coordinator.log) >= 20:
                        started.set()
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        def retrain():
            try:
                started.wait(timeout=30)
                coordinator.retrain()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=produce, args=(seed,))
                   for seed in range(num_producers)]
        threads.append(threading.Thread(target=retrain))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(coordinator.log) == num_producers * per_producer
        assert coordinator.num_retrains == 1
        assert 20 <= coordinator.model.num_samples <= num_producers * per_producer
        assert coordinator.pending_samples == \
            num_producers * per_producer - coordinator.model.num_samples
        snapshot = coordinator.prediction_snapshot()
        assert snapshot.version == 1
        assert len(snapshot.mean) == 25
        assert np.all(np.isfinite(snapshot.mean))
        assert np.all(snapshot.variance >= 0)

    def test_readers_see_consistent_snapshots(self, trained):
        trained.handle_position(PositionEvent('jackal', 2.0, 2.0))
        stop = threading.Event()
        seen = []
        errors = []

        def read():
            try:
                while not stop.is_set():
                    snapshot = trained.prediction_snapshot()
                    assert len(snapshot.mean) == len(snapshot.variance) == 25
                    seen.append(snapshot.version)
                    trained.handle_assignment(AssignmentRequest('jackal'))
            except Exception as e:
                errors.append(e)

        reader = threading.Thread(target=read)
        reader.start()
        try:
            for seed in range(3):
                for event in measurements(3, seed=10 + seed):
                    trained.handle_measurement(event)
        finally:
            stop.set()
            reader.join()

        assert errors == []
        assert trained.num_retrains == 3
        assert trained.prediction_snapshot().version == 4
        assert seen == sorted(seen)
        assert set(seen) <= {1, 2, 3, 4}


def test_from_file(tmp_path, config_dict):
    path = tmp_path / "coordinator.yaml"
    path.write_text(yaml.safe_dump(config_dict))
    coordinator = Coordinator.from_file(path, overrides=["retrain_threshold=5"])
    assert coordinator.retrain_threshold == 5
    assert coordinator.state is CoordinatorState.READY


class TestBattery:

    @pytest.fixture
    def battery_coordinator(self, config_dict):
        config_dict["agents"]["rover"] = {
            "id": 2,
            "heterogeneity": {"type": "BATTERY_LIFE", "threshold": 0.5, "penalty": 3.0},
        }
        config_dict["agents"]["husky"] = {
            "id": 3,
            "heterogeneity": {"type": "COMPOSITE", "factors": [
                {"type": "SPEED", "speed_factor": 2.0},
                {"type": "BATTERY_LIFE"},
            ]},
        }
        return Coordinator.from_mapping(config_dict)

    def test_low_battery_shrinks_cell(self, battery_coordinator):
        battery_coordinator.handle_position(PositionEvent('jackal', 0.0, 0.0))
        battery_coordinator.handle_position(PositionEvent('rover', 4.0, 0.0))
        before = battery_coordinator.partition_snapshot().cells[2]

        battery_coordinator.handle_battery(BatteryEvent('rover', 0.1))
        after = battery_coordinator.partition_snapshot().cells[2]
        assert battery_coordinator.cost_models['rover'].battery_level == 0.1
        assert set(after) < set(before)
        assert 4 in after

    def test_composite_battery(self, battery_coordinator):
        battery_coordinator.handle_battery(BatteryEvent('husky', 0.3))
        battery = battery_coordinator.cost_models['husky'].factors[1]
        assert battery.battery_level == 0.3

    def test_agent_without_battery_model(self, battery_coordinator):
        with pytest.raises(AgentStateError):
            battery_coordinator.handle_battery(BatteryEvent('pelican', 0.5))

    def test_invalid_battery_event(self, battery_coordinator):
        with pytest.raises(UnknownAgentError):
            battery_coordinator.handle_battery(BatteryEvent('drone', 0.5))
        with pytest.raises(DataError):
            battery_coordinator.handle_battery(BatteryEvent('rover', 1.5))
        assert battery_coordinator.cost_models['rover'].battery_level == 1.0
