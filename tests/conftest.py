"""Shared fixtures for flexlink tests."""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from flexlink.config import RunConfig
from flexlink.records import LinkageData
from flexlink.schema import MistakeControl, PIVSchema, StablePIV, UnstablePIV
from flexlink.synthetic import SyntheticConfig, SyntheticData, generate


@pytest.fixture()
def small_sim() -> SyntheticData:
    """Three PIVs, the last one unstable with a bounded mistake rate."""
    return generate(SyntheticConfig(
        cardinalities=[5, 6, 8],
        unstable=[False, False, True],
        n_a=30,
        n_b=40,
        n_links=15,
        seed=11,
    ))


@pytest.fixture()
def small_data(small_sim: SyntheticData) -> LinkageData:
    return small_sim.data


@pytest.fixture()
def quick_config() -> RunConfig:
    return RunConfig(stem_iter=4, stem_burnin=2, gibbs_iter=4, gibbs_burnin=2, seed=7)


@pytest.fixture()
def tiny_schema() -> PIVSchema:
    return PIVSchema(pivs=[
        StablePIV(name="sex", cardinality=2),
        UnstablePIV(
            name="town",
            cardinality=3,
            mistakes=MistakeControl(bounded=True),
            hazard_covariates_a=["age"],
        ),
    ])


@pytest.fixture()
def tiny_frames() -> tuple[pd.DataFrame, pd.DataFrame]:
    frame_a = pd.DataFrame({
        "sex": pd.array([0, 1, pd.NA], dtype="Int64"),
        "town": pd.array([2, 0, 1], dtype="Int64"),
        "age": [30.0, 41.0, 25.0],
        "year": [2000.0, 2001.0, 2002.0],
    })
    frame_b = pd.DataFrame({
        "sex": pd.array([0, 1], dtype="Int64"),
        "town": pd.array([pd.NA, 0], dtype="Int64"),
        "year": [2003.0, 2001.5],
    })
    return frame_a, frame_b


@pytest.fixture()
def tiny_data(tiny_schema: PIVSchema, tiny_frames) -> LinkageData:
    frame_a, frame_b = tiny_frames
    return LinkageData.from_frames(frame_a, frame_b, tiny_schema, time_column="year")


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)
