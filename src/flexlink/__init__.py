"""flexlink - Probabilistic record linkage with unstable identifying variables.

Links the records of two sources that describe overlapping populations,
estimating linkage, recording-mistake rates and the rate at which unstable
values change over time with a StEM algorithm wrapping a Gibbs sampler.
"""

__version__ = "0.1.0"

from flexlink.config import RunConfig
from flexlink.exceptions import (
    ConfigurationError,
    EstimabilityError,
    FlexLinkError,
    NumericalInstabilityError,
)
from flexlink.guard import build_schema, check_estimability
from flexlink.records import LinkageData, RecordStore, Source, encode_frames
from flexlink.schema import MistakeControl, PIVSchema, StablePIV, UnstablePIV
from flexlink.stem import StEM, StEMResult, fit

__all__ = [
    "ConfigurationError",
    "EstimabilityError",
    "FlexLinkError",
    "LinkageData",
    "MistakeControl",
    "NumericalInstabilityError",
    "PIVSchema",
    "RecordStore",
    "RunConfig",
    "Source",
    "StEM",
    "StEMResult",
    "StablePIV",
    "UnstablePIV",
    "build_schema",
    "check_estimability",
    "encode_frames",
    "fit",
]


# Lazy imports to keep the CLI and the simulator off the import path
def __getattr__(name: str):
    if name == "synthetic":
        from flexlink import synthetic
        return synthetic
    if name == "evaluation":
        from flexlink import evaluation
        return evaluation
    if name == "cli":
        from flexlink import cli
        return cli
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
