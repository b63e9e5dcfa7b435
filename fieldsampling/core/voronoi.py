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


"""Provides the heterogeneity-weighted Voronoi partition of the domain
"""

from typing import Dict, Mapping, Tuple

import numpy as np
from sklearn.metrics import pairwise_distances

from ..errors import (AgentPositionUnknownError, NoAgentPositionError,
                      UnknownAgentError)
from .domain import DomainGrid, Known, Unknown
from .heterogeneity import HeterogeneityCost


class SpatialPartitioner:
    """Assigns every domain location to exactly one agent.

    Location `i` is owned by the agent minimizing
    `cost_a(euclidean(grid[i], position_a))`, where `cost_a` is the agent's
    heterogeneity cost model. Ties go to the lowest agent id. The partition is
    recomputed on every call from the positions passed in.

    Args:
        domain (DomainGrid): Domain grid
        costs (Mapping[int, HeterogeneityCost]): Cost model of every agent id
    """
    def __init__(self, domain: DomainGrid,
                 costs: Mapping[int, HeterogeneityCost]):
        self.domain = domain
        self.costs = dict(costs)

    def _known_positions(self, positions: Mapping) -> Dict[int, Tuple[float, float]]:
        known = {}
        for agent_id, position in positions.items():
            if isinstance(position, Unknown):
                continue
            if agent_id not in self.costs:
                raise UnknownAgentError(f"No cost model for agent id {agent_id}")
            if isinstance(position, Known):
                known[agent_id] = (position.latitude, position.longitude)
            else:
                latitude, longitude = position
                known[agent_id] = (float(latitude), float(longitude))
        return known

    def get_costs(self, positions: Mapping) -> Tuple[np.ndarray, np.ndarray]:
        """Cost of every location for every positioned agent.

        Args:
            positions (Mapping): Agent id to `Known`, `Unknown` or an (x, y) tuple

        Returns:
            agent_ids (ndarray): (a,); Positioned agent ids in ascending order
            cost (ndarray): (n, a); Cost of location `i` for agent `agent_ids[j]`

        Raises:
            NoAgentPositionError: No agent has a known position
        """
        known = self._known_positions(positions)
        if not known:
            raise NoAgentPositionError("No agent has reported a position")

        agent_ids = np.array(sorted(known))
        agent_locations = np.array([known[a] for a in agent_ids])
        distances = pairwise_distances(self.domain.locations,
                                       Y=agent_locations, metric='euclidean')
        cost = np.empty_like(distances)
        for j, agent_id in enumerate(agent_ids):
            cost[:, j] = self.costs[agent_id].calculate_cost(
                agent_locations[j], distances[:, j])
        return agent_ids, cost

    def get_owners(self, positions: Mapping) -> np.ndarray:
        """Owner agent id of every domain location, shape (n,)."""
        agent_ids, cost = self.get_costs(positions)
        # argmin returns the first minimum, i.e. the lowest agent id on ties
        return agent_ids[np.argmin(cost, axis=1)]

    def partition(self, positions: Mapping) -> Dict[int, np.ndarray]:
        """Indices owned by every positioned agent.

        Returns:
            Dict[int, ndarray]: Agent id to sorted domain indices; agents that
                own no location map to an empty array
        """
        agent_ids, cost = self.get_costs(positions)
        owners = agent_ids[np.argmin(cost, axis=1)]
        return {int(agent_id): np.flatnonzero(owners == agent_id)
                for agent_id in agent_ids}

    def assign_cell(self, positions: Mapping, agent_id: int) -> np.ndarray:
        """Sorted domain indices owned by `agent_id`.

        Raises:
            NoAgentPositionError: No agent has a known position
            AgentPositionUnknownError: `agent_id` has no known position
        """
        position = positions.get(agent_id, Unknown())
        if isinstance(position, Unknown):
            if not self._known_positions(positions):
                raise NoAgentPositionError("No agent has reported a position")
            raise AgentPositionUnknownError(
                f"Agent {agent_id} has not reported a position")
        owners = self.get_owners(positions)
        return np.flatnonzero(owners == agent_id)
