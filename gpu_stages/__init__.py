"""Inference stages and the binary model loader.

Importing this package registers every stage variant with the loader and
every kernel entry point with the host backend.
"""

from gpu_stages import host_kernels  # noqa: F401
from gpu_stages.identity import Identity
from gpu_stages.linear import Linear
from gpu_stages.pipeline import Pipeline, Sequential
from gpu_stages.registry import load_model, load_stage, register_stage, registered_stages
from gpu_stages.reshape import INFER, Reshape
from gpu_stages.spatial_divisive_normalization import SpatialDivisiveNormalization
from gpu_stages.spatial_up_sampling_nearest import SpatialUpSamplingNearest
from gpu_stages.stage import Stage, StageType

__all__ = [
    "Stage",
    "StageType",
    "Identity",
    "Reshape",
    "INFER",
    "Linear",
    "SpatialDivisiveNormalization",
    "SpatialUpSamplingNearest",
    "Sequential",
    "Pipeline",
    "load_stage",
    "load_model",
    "register_stage",
    "registered_stages",
]
