__all__ = [
    "StrangenessRecoError", "PropagationDivergence", "MissingConditionsError", "ConfigurationError",
    "TrackState",
    "MaterialCorrection", "MaterialBudgetService", "MaterialLayer", "CylindricalMaterialLUT",
    "SolverConfig", "SolveStatus", "ClosestApproach", "SolveResult", "ClosestApproachSolver",
    "CovarianceQuality", "CandidateCovariance", "CovariancePropagator",
    "SelectionCascade", "CutConfiguration", "CutRequirement", "RequirementRegistry",
    "SelectionNegotiator", "derive_loosest_config",
    "BuildStatus", "BuildOutcome", "Vertex3D", "V0Candidate", "CascadeCandidate",
    "V0Builder", "CascadeBuilder",
    "RunConditions", "StaticConditionsSource", "RunContext", "RunContextProvider",
    "DaughterTrack", "TrackTable", "TimeFrame", "load_time_frame", "write_time_frame",
    "TimeFrameMetrics", "LoggingMetricsSink", "JsonLinesMetricsSink", "MemoryMetricsSink",
    "TimeFrameBuilder", "TimeFrameResult", "ParallelTimeFrameBuilder",
]

# Errors
from .errors import StrangenessRecoError, PropagationDivergence, MissingConditionsError, ConfigurationError

# Tracks & material
from .track import TrackState
from .material import MaterialCorrection, MaterialBudgetService, MaterialLayer, CylindricalMaterialLUT

# Solver & covariance
from .solver import SolverConfig, SolveStatus, ClosestApproach, SolveResult, ClosestApproachSolver
from .covariance import CovarianceQuality, CandidateCovariance, CovariancePropagator

# Selection
from .selection import (
    SelectionCascade,
    CutConfiguration,
    CutRequirement,
    RequirementRegistry,
    SelectionNegotiator,
    derive_loosest_config,
)

# Builders
from .builders import BuildStatus, BuildOutcome, Vertex3D, V0Candidate, CascadeCandidate, V0Builder, CascadeBuilder

# Run conditions & data
from .conditions import RunConditions, StaticConditionsSource, RunContext, RunContextProvider
from .data import DaughterTrack, TrackTable, TimeFrame, load_time_frame, write_time_frame

# Orchestration & metrics
from .metrics import TimeFrameMetrics, LoggingMetricsSink, JsonLinesMetricsSink, MemoryMetricsSink
from .time_frame_builder import TimeFrameBuilder, TimeFrameResult
from .parallel_builder import ParallelTimeFrameBuilder
