"""Pytest configuration and shared fixtures for cohort survival tests.

This module provides small hand-built cohorts, simulated survival records,
engine configurations, and MLflow isolation.
"""
import pytest
import pandas as pd
import numpy as np
from datetime import date

from cohort_survival.config import (
    CohortConfig,
    CollapseSpec,
    EngineConfig,
    ModelConfig,
    OutcomeSpec,
    PeriodBoundary,
    PeriodIndexSpec,
    ResolutionStrategy,
    SourceSpec,
)
from cohort_survival.simulation import simulate_gompertz


@pytest.fixture
def small_cohort_config():
    """Cohort with three yearly periods (1950, 1951, 1952) and a binary collapse.

    Returns:
        CohortConfig: index = year - 1950, one period per birth year
    """
    return CohortConfig(
        id_column="eid",
        birth_year_column="birth_year",
        birth_month_column="birth_month",
        index=PeriodIndexSpec(epoch_year=1950, periods_per_year=1, months_per_period=12, offset=0),
        periods=(PeriodBoundary(1, 0, 0), PeriodBoundary(2, 1, 1), PeriodBoundary(3, 2, 2)),
        fine_column="period",
        fine_reference=1,
        fine_labels=((1, "1950"), (2, "1951"), (3, "1952")),
        collapses=(
            CollapseSpec(
                name="exposed",
                mapping=((1, 0), (2, 1), (3, 1)),
                labels=((0, "Never"), (1, "Exposed")),
                reference=0,
            ),
        ),
        cluster_column="yearmobirth",
        assessment_columns=("visit_1", "visit_2"),
        censoring_cap=66.0,
    )


@pytest.fixture
def small_frame():
    """Six subjects born 1949-1952 with two assessment visits.

    Returns:
        pd.DataFrame: Raw subject frame; subject 106 falls outside every period
    """
    return pd.DataFrame({
        "eid": [101, 102, 103, 104, 105, 106],
        "birth_year": [1950, 1950, 1951, 1951, 1952, 1949],
        "birth_month": [1, 7, 3, 12, 6, 5],
        "visit_1": ["2008-01-01", "2009-07-01", "2007-03-01", "2010-12-01", "2008-06-01", "2008-05-01"],
        "visit_2": ["2014-01-01", None, None, "2016-12-01", None, None],
        "hosp_date": [np.nan, 19000.0, np.nan, np.nan, 17000.0, np.nan],
        "self_age": [55.0, np.nan, 20.0, np.nan, 52.0, 60.0],
        "excluded_flag": [0, 0, 0, 0, 1, 0],
    })


@pytest.fixture
def small_outcome():
    """Earliest-wins outcome over an epoch-day hospital date and a self-reported age."""
    return OutcomeSpec(
        name="disease",
        sources=(
            SourceSpec("hosp_date", kind="date", encoding="epoch_day"),
            SourceSpec("self_age", kind="age"),
        ),
        strategy=ResolutionStrategy.EARLIEST_WINS,
        min_plausible_age=36.0,
        exclusion_field="excluded_flag",
        administrative_cap=66.0,
    )


@pytest.fixture
def small_engine_config(small_cohort_config, small_outcome):
    """EngineConfig over the small cohort with the binary exposure."""
    return EngineConfig(
        cohort=small_cohort_config,
        outcomes=(small_outcome,),
        model=ModelConfig(exposures=("exposed",), km_group_column="exposed"),
    )


@pytest.fixture(scope="session")
def gompertz_records():
    """10,000 simulated subjects, shape 0.08, baseline 0.001, log HR -0.4, censored at 60.

    Returns:
        pd.DataFrame: Survival records with a binary ``exposure`` column
    """
    return simulate_gompertz(
        10_000, shape=0.08, baseline=0.001, effects={"exposure": -0.4},
        censor_age=60.0, n_clusters=200, seed=20240101,
    )


@pytest.fixture
def sample_structured_y():
    """Create small structured survival array for testing.

    Returns:
        np.ndarray: Structured array with dtype=[('event', bool), ('time', float)]
    """
    return np.array(
        [(True, 52.5), (False, 66.0), (True, 48.0), (False, 61.0), (True, 58.0)],
        dtype=[("event", bool), ("time", float)]
    )


@pytest.fixture(autouse=True)
def isolated_mlflow(tmp_path, monkeypatch):
    """Point MLflow at a per-test directory and reset it afterwards.

    Ensures tests don't interfere with each other's MLflow tracking.
    """
    import mlflow
    monkeypatch.setenv("MLFLOW_TRACKING_URI", (tmp_path / "mlruns").as_uri())
    monkeypatch.setenv("MLFLOW_ALLOW_FILE_STORE", "true")
    yield
    mlflow.set_tracking_uri(None)


@pytest.fixture(autouse=True)
def reset_engine_logger():
    """Undo ``setup_logging`` so later tests see records through caplog."""
    yield
    import logging
    logger = logging.getLogger("cohort_survival")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
