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


from shapely import geometry
import shapely

import numpy as np
from typing import Sequence, Tuple, Union


def bounds2grid(bounds: Sequence[Sequence[float]],
                resolution: Union[float, Tuple[float, float]]) -> np.ndarray:
    """
    Builds a regular grid of candidate locations covering a rectangle.

    Args:
        bounds (Sequence[Sequence[float]]): ((x_min, x_max), (y_min, y_max)); inclusive
                                            limits of the rectangle.
        resolution (Union[float, Tuple[float, float]]): Grid spacing, shared by both axes
                                                         or given per axis.

    Returns:
        np.ndarray: (n, 2); Grid points ordered row-major (x varies fastest).

    Usage:
        ```python
        from fieldsampling.utils.misc import bounds2grid

        grid = bounds2grid([[0, 2], [0, 1]], 1.0)
        # [[0, 0], [1, 0], [2, 0], [0, 1], [1, 1], [2, 1]]
        ```
    """
    (x_min, x_max), (y_min, y_max) = bounds
    dx, dy = np.broadcast_to(np.asarray(resolution, dtype=np.float64), (2,))
    if dx <= 0 or dy <= 0:
        raise ValueError(f"Grid resolution must be positive; got {resolution}")
    if x_max < x_min or y_max < y_min:
        raise ValueError(f"Invalid grid bounds: {bounds}")
    # Small tolerance so the upper bound is included despite rounding
    xs = np.arange(x_min, x_max + dx * 1e-9, dx)
    ys = np.arange(y_min, y_max + dy * 1e-9, dy)
    X, Y = np.meshgrid(xs, ys)
    return np.stack([X.ravel(), Y.ravel()], axis=-1)


def polygon2grid(vertices: np.ndarray,
                 resolution: Union[float, Tuple[float, float]]) -> np.ndarray:
    """
    Builds a regular grid of candidate locations inside a polygon.
    Points on the polygon boundary are kept.

    Args:
        vertices (np.ndarray): (v, 2); Polygon vertices. The polygon is closed automatically.
        resolution (Union[float, Tuple[float, float]]): Grid spacing.

    Returns:
        np.ndarray: (n, 2); Grid points inside the polygon, in row-major order.
    """
    poly = geometry.Polygon(vertices)
    x_min, y_min, x_max, y_max = poly.bounds
    grid = bounds2grid([[x_min, x_max], [y_min, y_max]], resolution)
    inside = shapely.intersects_xy(poly, grid[:, 0], grid[:, 1])
    return grid[inside]

