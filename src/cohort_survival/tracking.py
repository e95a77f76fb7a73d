"""Optional MLflow experiment tracking of analysis runs.

Every function degrades gracefully: a tracking failure is logged and the
analysis continues.
"""
from __future__ import annotations
import logging
import math
from typing import Any, Dict, Optional
import mlflow
import mlflow.exceptions

EXPERIMENT_NAME = "cohort_survival"


def start_run(run_name: str, tags: Dict[str, str] | None = None, experiment: str = EXPERIMENT_NAME):
    """Start an MLflow run under the cohort_survival experiment.

    Returns:
        Active MLflow run context manager

    Example:
        >>> with start_run("sugar_rationing", tags={"config": "preset"}):
        ...     safe_log_params({"tie_method": "efron"})
    """
    mlflow.set_experiment(experiment)
    return mlflow.start_run(run_name=run_name, tags=tags)


def _log_failure(logger: Optional[logging.Logger], what: str, error: Exception):
    if logger is None:
        return
    if isinstance(error, mlflow.exceptions.MlflowException):
        logger.warning(f"MLflow {what} logging failed: {error}", extra={"category": "mlflow_error"})
    else:
        logger.error(f"Unexpected error in MLflow {what} logging: {error}", extra={"category": "mlflow_error"})


def safe_log_params(params: Dict[str, Any], logger: Optional[logging.Logger] = None) -> bool:
    """Log parameters; values MLflow rejects are logged as strings.

    Returns:
        True if logging succeeded, False if it failed
    """
    try:
        for k, v in params.items():
            try:
                mlflow.log_param(k, v)
            except mlflow.exceptions.MlflowException:
                mlflow.log_param(k, str(v))
        return True
    except Exception as e:
        _log_failure(logger, "params", e)
        return False


def safe_log_metrics(
    metrics: Dict[str, float],
    step: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Log numeric metrics, skipping non-finite values.

    Returns:
        True if logging succeeded, False if it failed

    Example:
        >>> safe_log_metrics({"T2DM_gompertz_years_ration22_1_hr": 0.66}, logger=logger)
        True
    """
    try:
        values = {k: float(v) for k, v in metrics.items() if v is not None}
        finite = {k: v for k, v in values.items() if math.isfinite(v)}
        mlflow.log_metrics(finite, step=step)
        return True
    except Exception as e:
        _log_failure(logger, "metrics", e)
        return False


def safe_log_dict(d: Dict[str, Any], artifact_file: str, logger: Optional[logging.Logger] = None) -> bool:
    """Log a dictionary as a JSON artifact (e.g. the engine configuration)."""
    try:
        mlflow.log_dict(d, artifact_file)
        return True
    except Exception as e:
        _log_failure(logger, "dict", e)
        return False
