# tests/test_voronoi.py
"""Tests for the heterogeneity-weighted Voronoi partition."""

import numpy as np
import pytest

from fieldsampling.core.domain import Known, Unknown
from fieldsampling.core.heterogeneity import HeterogeneityCost, SpeedCost
from fieldsampling.core.voronoi import SpatialPartitioner
from fieldsampling.errors import (AgentPositionUnknownError,
                                  NoAgentPositionError, UnknownAgentError)


@pytest.fixture
def partitioner(line_grid):
    return SpatialPartitioner(line_grid, {0: HeterogeneityCost(),
                                          1: HeterogeneityCost(),
                                          2: HeterogeneityCost()})


class TestAssignCell:

    def test_tie_goes_to_lowest_id(self, partitioner):
        positions = {0: Known(0.0, 0.0), 1: Known(4.0, 0.0)}
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 0),
                                      [0, 1, 2])
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 1),
                                      [3, 4])

    def test_tie_break_follows_id_not_order(self, partitioner):
        positions = {1: Known(0.0, 0.0), 0: Known(4.0, 0.0)}
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 0),
                                      [2, 3, 4])
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 1),
                                      [0, 1])

    def test_speed_weighting(self, line_grid):
        partitioner = SpatialPartitioner(line_grid, {
            0: HeterogeneityCost(), 1: SpeedCost(speed_factor=3.0)})
        positions = {0: Known(0.0, 0.0), 1: Known(4.0, 0.0)}
        # Index 1 costs 1 for both agents
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 0),
                                      [0, 1])
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 1),
                                      [2, 3, 4])

    def test_tuple_positions(self, partitioner):
        positions = {0: (0.0, 0.0), 1: (4.0, 0.0)}
        np.testing.assert_array_equal(partitioner.assign_cell(positions, 1),
                                      [3, 4])

    def test_single_agent_owns_everything(self, partitioner, line_grid):
        cell = partitioner.assign_cell({2: Known(1.0, 1.0)}, 2)
        np.testing.assert_array_equal(cell, np.arange(len(line_grid)))

    def test_unknown_positions_are_skipped(self, partitioner, line_grid):
        positions = {0: Unknown(), 1: Known(4.0, 0.0)}
        cell = partitioner.assign_cell(positions, 1)
        np.testing.assert_array_equal(cell, np.arange(len(line_grid)))

    def test_no_positions(self, partitioner):
        with pytest.raises(NoAgentPositionError):
            partitioner.assign_cell({}, 0)
        with pytest.raises(NoAgentPositionError):
            partitioner.assign_cell({0: Unknown(), 1: Unknown()}, 0)

    def test_requesting_agent_without_position(self, partitioner):
        with pytest.raises(AgentPositionUnknownError):
            partitioner.assign_cell({1: Known(4.0, 0.0)}, 0)

    def test_agent_without_cost_model(self, partitioner):
        with pytest.raises(UnknownAgentError):
            partitioner.assign_cell({7: Known(0.0, 0.0)}, 7)

    def test_repeatable(self, partitioner):
        positions = {0: Known(0.3, 0.0), 1: Known(2.2, 0.0), 2: Known(3.9, 0.0)}
        first = partitioner.partition(positions)
        second = partitioner.partition(positions)
        for agent_id in first:
            np.testing.assert_array_equal(first[agent_id], second[agent_id])


class TestPartition:

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_total_and_disjoint(self, grid, seed):
        rng = np.random.default_rng(seed)
        costs = {0: HeterogeneityCost(), 1: SpeedCost(speed_factor=2.0),
                 2: SpeedCost(speed_factor=0.5)}
        partitioner = SpatialPartitioner(grid, costs)
        positions = {i: Known(*rng.uniform(0, 4, size=2)) for i in costs}

        cells = [partitioner.assign_cell(positions, i) for i in costs]
        union = np.concatenate(cells)
        assert len(union) == len(grid)
        np.testing.assert_array_equal(np.sort(union), np.arange(len(grid)))

        partition = partitioner.partition(positions)
        for i, cell in zip(costs, cells):
            np.testing.assert_array_equal(partition[i], cell)

    def test_agent_with_empty_cell(self, partitioner):
        # Agent 1 shares agent 0's position and loses every tie
        partition = partitioner.partition({0: Known(2.0, 0.0),
                                           1: Known(2.0, 0.0)})
        np.testing.assert_array_equal(partition[0], np.arange(5))
        assert len(partition[1]) == 0

    def test_costs_shape(self, partitioner):
        agent_ids, cost = partitioner.get_costs({2: Known(0.0, 0.0),
                                                 0: Known(1.0, 0.0)})
        np.testing.assert_array_equal(agent_ids, [0, 2])
        assert cost.shape == (5, 2)
        np.testing.assert_allclose(cost[:, 1], [0, 1, 2, 3, 4])
