"""
FieldSampling: Multi-Agent Informative Field Sampling

Software Suite for coordinating heterogeneous mobile sensing agents.

The library includes python code for the following:
- Mixture of Gaussian processes field model trained online with EM
- Heterogeneity-weighted Voronoi partitioning of the sampling domain
- Variance and UCB based informative location selection
- A thread-safe coordinator binding the above

"""

__version__ = "0.1.0"
__author__ = 'Kalvik'

from .errors import *
from .config import (SamplingConfig, ModelConfig, AgentProfile, SampleSet,
                     GroundTruthConfig, load_config, load_config_file)
from .core.domain import DomainGrid, Measurement, MeasurementLog, Known, Unknown
from .core.gpmm import (ComponentParams, GaussianProcessMixture,
                        GaussianProcessComponent, PredictionVector)
from .core.heterogeneity import (HeterogeneityCost, HETEROGENEITIES,
                                 get_heterogeneity, make_heterogeneity)
from .core.voronoi import SpatialPartitioner
from .core.informative_sampling import SamplingMode, SamplePolicy
from .coordinator import (Coordinator, CoordinatorState, MeasurementEvent,
                          PositionEvent, BatteryEvent, AssignmentRequest,
                          AssignmentResponse, PredictionSnapshot,
                          PartitionSnapshot)
