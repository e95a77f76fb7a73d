"""Logging configuration for the cohort survival engine.

All engine loggers live under the ``cohort_survival`` hierarchy
(``cohort_survival.records``, ``cohort_survival.models.gompertz``, ...).
``setup_logging`` attaches:
- a console handler at the requested level
- main_{timestamp}.log with every message
- performance_{timestamp}.log with timing and fit metrics only
- warnings_{timestamp}.log with warnings and errors only
- debug_{timestamp}.log when running at DEBUG level

Example:
    >>> from cohort_survival.logging_config import setup_logging, log_performance
    >>> logger = setup_logging(log_dir="outputs/logs", log_level=logging.INFO)
    >>> log_performance(logger, "Gompertz fit", outcome="T2DM", n_iter=9, duration_sec=1.4)
"""
import logging
import sys
import warnings
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional, Union
from contextlib import contextmanager

ROOT_LOGGER = "cohort_survival"


class PerformanceFilter(logging.Filter):
    """Pass only records tagged with ``is_performance``."""

    def filter(self, record):
        return getattr(record, "is_performance", False)


class WarningErrorFilter(logging.Filter):
    """Pass only WARNING and above."""

    def filter(self, record):
        return record.levelno >= logging.WARNING


def setup_logging(
    log_dir: Union[str, Path, None] = "outputs/logs",
    log_level: int = logging.INFO,
    console_output: bool = True,
) -> logging.Logger:
    """Configure the ``cohort_survival`` logger hierarchy.

    Args:
        log_dir: Directory for log files. None disables file logging
        log_level: Minimum console level (DEBUG=10, INFO=20, WARNING=30)
        console_output: Whether to log to stdout

    Returns:
        The configured ``cohort_survival`` logger

    Example:
        >>> logger = setup_logging(log_dir=None, console_output=True)
        >>> logger.info("Analysis started")
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    performance_formatter = logging.Formatter(
        fmt='%(asctime)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_formatter = logging.Formatter(fmt='%(levelname)-8s | %(message)s')

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    if log_dir is None:
        return logger

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    def _file_handler(stem: str, level: int, formatter, log_filter=None):
        handler = logging.FileHandler(log_dir / f"{stem}_{timestamp}.log", mode='w', encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(formatter)
        if log_filter is not None:
            handler.addFilter(log_filter)
        logger.addHandler(handler)

    _file_handler("main", logging.DEBUG, detailed_formatter)
    _file_handler("performance", logging.INFO, performance_formatter, PerformanceFilter())
    _file_handler("warnings", logging.WARNING, detailed_formatter, WarningErrorFilter())
    if log_level == logging.DEBUG:
        _file_handler("debug", logging.DEBUG, detailed_formatter)

    logger.info(f"Log directory: {log_dir.absolute()}")
    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log a timing or fit-metric line, routed to the performance log.

    Args:
        logger: Logger instance
        message: Description of the measured step
        **kwargs: Measurements appended as ``key=value`` pairs

    Example:
        >>> log_performance(logger, "Cox fit", outcome="T2DM", n_iter=6, loglik=-51234.2)
        # Output: "Cox fit | outcome=T2DM | n_iter=6 | loglik=-51234.2"
    """
    if kwargs:
        message = message + " | " + " | ".join(f"{k}={v}" for k, v in kwargs.items())
    logger.info(message, extra={"is_performance": True})


class WarningLogger:
    """Counts and logs captured warnings by category.

    Categories:
    - convergence: optimiser stopped at its iteration cap
    - numerical: overflow, invalid values, singular matrices
    - data: missing, unclassified or rank-deficient inputs
    - statistical: information matrix, variance and bootstrap problems
    - other: anything else
    """

    WARNING_CATEGORIES = {
        'convergence': ['NonConvergenceWarning', 'ConvergenceWarning', 'did not converge', 'maximum iterations'],
        'numerical': ['overflow', 'underflow', 'invalid value', 'divide by zero', 'singular'],
        'data': ['missing', 'unclassified', 'rank-deficient', 'unknown categories'],
        'statistical': ['Hessian', 'information', 'variance', 'bootstrap'],
    }

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.warning_counts: Dict[str, int] = {cat: 0 for cat in self.WARNING_CATEGORIES}
        self.warning_counts['other'] = 0

    def categorize_warning(self, message: str) -> str:
        message_lower = message.lower()
        for category, keywords in self.WARNING_CATEGORIES.items():
            if any(kw.lower() in message_lower for kw in keywords):
                return category
        return 'other'

    def log_warning(self, message: str, category: Optional[str] = None):
        if category is None:
            category = self.categorize_warning(message)
        self.warning_counts[category] += 1
        self.logger.warning(f"[{category.upper()}] {message}")

    def summary(self) -> Dict[str, int]:
        """Categories with at least one warning."""
        return {k: v for k, v in self.warning_counts.items() if v > 0}


@contextmanager
def capture_warnings(logger: logging.Logger):
    """Route Python warnings raised inside the block to ``logger``.

    Each warning is logged with its category tag; a one-line summary is
    logged on exit.

    Yields:
        WarningLogger with per-category counts

    Example:
        >>> with capture_warnings(logger) as captured:
        ...     GompertzPH(max_iter=2).fit(X, names, time, event)
        >>> captured.summary()
        {'convergence': 1}
    """
    warning_logger = WarningLogger(logger)

    def warning_handler(message, category, filename, lineno, file=None, line=None):
        warning_logger.log_warning(f"{category.__name__}: {message}")

    try:
        # catch_warnings restores the filters and showwarning on exit
        with warnings.catch_warnings():
            warnings.simplefilter("always")
            warnings.showwarning = warning_handler
            yield warning_logger
    finally:
        summary = warning_logger.summary()
        if summary:
            logger.info("Warning summary: " + ", ".join(f"{k}={v}" for k, v in summary.items()))


class ProgressLogger:
    """Logs ``done/total`` progress with optional metrics.

    Example:
        >>> progress = ProgressLogger(logger, total=2, desc="Outcomes")
        >>> progress.update(1, metrics={"verdict": "PARTIAL"})
        # Output: "Outcomes: 1/2 (50.0%) | verdict=PARTIAL"
    """

    def __init__(self, logger: logging.Logger, total: int, desc: str, log_interval: int = 1):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.log_interval = log_interval
        self.current = 0

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        self.current += n
        if self.current % self.log_interval and self.current != self.total:
            return
        pct = (self.current / self.total) * 100 if self.total else 100.0
        msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"
        if metrics:
            msg += " | " + ", ".join(
                f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}" for k, v in metrics.items()
            )
        self.logger.info(msg)
