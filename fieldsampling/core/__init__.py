# fieldsampling/core/__init__.py

"""Core modules in this package:

- `domain`: Provides the domain grid, agent positions and the append-only measurement log
- `gpmm`: Provides a mixture of Gaussian processes field model trained with EM
- `heterogeneity`: Provides cost models that turn travel distance into agent-specific cost
- `informative_sampling`: Provides variance and UCB based sampling location selection
- `voronoi`: Provides the heterogeneity-weighted Voronoi partition of the domain
"""
