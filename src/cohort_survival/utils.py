from __future__ import annotations
import os
import datetime as dt
from typing import Dict, Optional
import pandas as pd


def ensure_dir(path: str):
    """Create directory (and parents) if it doesn't exist.

    Example:
        >>> ensure_dir("outputs/tables")
    """
    os.makedirs(path, exist_ok=True)


def versioned_name(base: str, prefix: Optional[str] = None) -> str:
    """Timestamped name ``[prefix_]base_YYYYMMDD_HHMMSS``.

    Example:
        >>> versioned_name("hazard_ratios", prefix="T2DM")
        'T2DM_hazard_ratios_20261018_143052'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    if prefix:
        return f"{prefix}_{base}_{ts}"
    return f"{base}_{ts}"


def get_output_paths(output_dir: str = "outputs") -> Dict[str, str]:
    """Standard output directories of an analysis run, created if missing.

    Args:
        output_dir: Root output directory

    Returns:
        Dictionary with keys:
        - base_dir: Root output directory
        - tables: Hazard ratio, validation and accounting tables
        - curves: Kaplan-Meier curve datasets
        - logs: Log files
        - config: Saved engine configuration

    Example:
        >>> paths = get_output_paths("outputs/sugar")
        >>> paths["tables"]
        'outputs/sugar/tables'
    """
    paths = {
        "base_dir": output_dir,
        "tables": os.path.join(output_dir, "tables"),
        "curves": os.path.join(output_dir, "curves"),
        "logs": os.path.join(output_dir, "logs"),
        "config": os.path.join(output_dir, "config"),
    }
    for path in paths.values():
        ensure_dir(path)
    return paths


def save_table(df: pd.DataFrame, outdir: str, name: str) -> str:
    """Write ``df`` to ``outdir/name.csv`` and return the path."""
    ensure_dir(outdir)
    path = os.path.join(outdir, f"{name}.csv")
    df.to_csv(path, index=False)
    return path
