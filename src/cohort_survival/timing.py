"""Timing helpers that report durations through ``log_performance``.

Example:
    >>> from cohort_survival.timing import log_execution_time, Timer
    >>>
    >>> @log_execution_time()
    ... def build_all_records(df, config):
    ...     ...
    >>> with Timer(logger, "T2DM Gompertz fit") as timer:
    ...     fitted = model.fit(X, names, time, event)
    >>> timer.duration
    1.37
"""
import time
import functools
import logging
from typing import Callable, Optional

from cohort_survival.logging_config import log_performance


def log_execution_time(logger: Optional[logging.Logger] = None, description: Optional[str] = None):
    """Decorator logging the wall-clock duration of each call.

    Args:
        logger: Logger instance (``cohort_survival.<module>`` logger if None)
        description: Label used in the log line (function name if None)

    Returns:
        Decorator

    Example:
        >>> @log_execution_time(description="cohort classification")
        ... def classify(df):
        ...     return classifier.assign(df)
        INFO     | Completed: cohort classification | duration_sec=0.84
    """
    def decorator(func: Callable) -> Callable:
        label = description or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            log = logger or logging.getLogger(f"cohort_survival.{func.__module__.split('.')[-1]}")
            with Timer(log, label):
                return func(*args, **kwargs)

        return wrapper
    return decorator


class Timer:
    """Context manager measuring a block and logging it as a performance line.

    Args:
        logger: Logger instance
        description: What is being timed
        **context: Extra ``key=value`` pairs for the completion line

    Example:
        >>> with Timer(logger, "Kaplan-Meier curves", outcome="T2DM"):
        ...     curves = kaplan_meier(records, "utero", min_age=34)
        INFO     | Completed: Kaplan-Meier curves | outcome=T2DM | duration_sec=0.21
    """

    def __init__(self, logger: logging.Logger, description: str, **context):
        self.logger = logger
        self.description = description
        self.context = context
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is None:
            log_performance(
                self.logger,
                f"Completed: {self.description}",
                **self.context,
                duration_sec=round(self.duration, 2),
            )
        else:
            self.logger.error(
                f"{self.description} failed after {self.duration:.2f}s: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )
        return False

    def elapsed(self) -> float:
        """Seconds since entering the context (0.0 before)."""
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
