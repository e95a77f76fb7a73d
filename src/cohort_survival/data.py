from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.preprocessing import OneHotEncoder

from cohort_survival.config import CovariateSpec, EngineConfig, SingularPolicy
from cohort_survival.errors import SchemaError, SingularDesign
from cohort_survival.records import CENSOR_COL, EVENT_COL, TIME_COL

logger = logging.getLogger("cohort_survival.data")


class FieldType(str, Enum):
    """Declared type of an input column."""
    DATE = "date"
    INTEGER = "integer"
    CATEGORICAL = "categorical"
    CONTINUOUS = "continuous"


def load_data(file_path: str) -> pd.DataFrame:
    """Load a subject-level cohort extract from CSV or pickle file.

    Args:
        file_path: Path to input file (CSV or pickle)

    Returns:
        DataFrame with one row per subject

    Raises:
        FileNotFoundError: If file_path does not exist
        ValueError: If file format is not supported

    Example:
        >>> df = load_data("data/inputs/cohort.csv")
        >>> print(df.shape)
        (502366, 41)
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()

    if suffix == '.csv':
        logger.info(f"Loading CSV data from {file_path}")
        df = pd.read_csv(file_path, low_memory=False)
    elif suffix in ['.pkl', '.pickle']:
        logger.info(f"Loading pickle data from {file_path}")
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .csv, .pkl, .pickle"
        )

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
    return df


def _uncoercible(series: pd.Series, field_type: FieldType) -> int:
    present = series.notna() & (series.astype(str).str.strip() != "")
    if field_type in (FieldType.INTEGER, FieldType.CONTINUOUS):
        numeric = pd.to_numeric(series, errors="coerce")
        bad = present & numeric.isna()
        if field_type == FieldType.INTEGER:
            bad |= numeric.notna() & (numeric != np.floor(numeric))
        return int(bad.sum())
    if field_type == FieldType.DATE:
        numeric = pd.to_numeric(series, errors="coerce")
        text = series.where(numeric.isna()).astype("string").str.strip().str.slice(0, 10)
        parsed = pd.to_datetime(text, format="%Y-%m-%d", errors="coerce")
        return int((present & numeric.isna() & parsed.isna()).sum())
    return 0


def validate_schema(frame: pd.DataFrame, schema: Mapping[str, FieldType]) -> None:
    """Check that every declared column is present and coercible to its type.

    Args:
        frame: Input frame
        schema: Column name -> declared FieldType

    Raises:
        SchemaError: Listing every missing column and every column with
            values that cannot be coerced to the declared type
    """
    missing = [column for column in schema if column not in frame.columns]
    problems = []
    for column, field_type in schema.items():
        if column in missing:
            continue
        n_bad = _uncoercible(frame[column], FieldType(field_type))
        if n_bad:
            problems.append(f"{column} ({n_bad:,} values not {FieldType(field_type).value})")
    if missing or problems:
        parts = []
        if missing:
            parts.append(f"missing columns: {missing}")
        if problems:
            parts.append(f"uncoercible columns: {problems}")
        raise SchemaError("Input does not match schema; " + "; ".join(parts))


def engine_schema(config: EngineConfig) -> Dict[str, FieldType]:
    """Input schema implied by an engine configuration."""
    cohort = config.cohort
    schema: Dict[str, FieldType] = {
        cohort.birth_year_column: FieldType.INTEGER,
        cohort.birth_month_column: FieldType.INTEGER,
    }
    for column in cohort.assessment_columns:
        schema[column] = FieldType.DATE
    for rule in cohort.exclusions:
        schema.setdefault(rule.column, FieldType.CATEGORICAL)
    for outcome in config.outcomes:
        for source in outcome.sources:
            schema[source.column] = FieldType.DATE if source.kind == "date" else FieldType.CONTINUOUS
        if outcome.exclusion_field:
            schema.setdefault(outcome.exclusion_field, FieldType.CATEGORICAL)
    derived = {d.name for d in cohort.derivations}
    for spec in cohort.derivations:
        if spec.source not in derived and spec.source not in schema:
            schema[spec.source] = FieldType.CONTINUOUS
    produced = derived | set(cohort.classification_columns()) | {cohort.cluster_column, CENSOR_COL}
    for column in cohort.complete_controls:
        if column not in produced:
            schema.setdefault(column, FieldType.CONTINUOUS)
    return schema


def to_structured_y(df: pd.DataFrame) -> np.ndarray:
    """Create scikit-survival structured array from survival records.

    Args:
        df: DataFrame containing EVENT_COL and TIME_COL columns

    Returns:
        Structured numpy array with dtype=[('event', bool), ('time', float)]

    Example:
        >>> df = pd.DataFrame({'event': [True, False], 'time': [52.5, 66.0]})
        >>> y = to_structured_y(df)
        >>> y.dtype.names
        ('event', 'time')
    """
    y = np.array(
        list(zip(df[EVENT_COL].astype(bool).values, df[TIME_COL].astype(float).values)),
        dtype=[("event", bool), ("time", float)],
    )
    return y


# ============================================================================
# Design matrix
# ============================================================================

@dataclass
class DesignMatrix:
    """Numeric design for a hazard model.

    Attributes:
        X: Float matrix, one column per term (no intercept)
        names: Term names, ``{covariate}_{level}`` for categorical dummies
        rows: Boolean mask of the input records used (complete cases)
        n_missing: Records dropped for missing covariate values
        dropped_columns: Terms removed by the rank check
    """
    X: np.ndarray
    names: List[str]
    rows: np.ndarray
    n_missing: int = 0
    dropped_columns: List[str] = field(default_factory=list)


def _reference_level(values: pd.Series, spec: CovariateSpec):
    levels = sorted(values.unique())
    reference = spec.reference if spec.reference is not None else levels[0]
    if reference not in levels:
        raise SchemaError(
            f"Reference level {reference!r} of {spec.name!r} not observed (levels: {levels})"
        )
    return reference


def make_design_preprocessor(frame: pd.DataFrame, covariates: Sequence[CovariateSpec]) -> ColumnTransformer:
    """Create the ColumnTransformer that builds the design matrix.

    One transformer per covariate keeps the term order of ``covariates``.
    Categorical covariates are one-hot encoded with their reference level
    dropped; continuous covariates pass through unchanged.

    Args:
        frame: Complete-case frame used to resolve reference levels
        covariates: Covariates in design order

    Returns:
        Unfitted ColumnTransformer with ``verbose_feature_names_out=False``
    """
    transformers = []
    for spec in covariates:
        if spec.kind == "categorical":
            reference = _reference_level(frame[spec.name], spec)
            encoder = OneHotEncoder(
                drop=[reference], sparse_output=False, handle_unknown="error", dtype=float
            )
            transformers.append((spec.name, encoder, [spec.name]))
        else:
            transformers.append((spec.name, "passthrough", [spec.name]))
    return ColumnTransformer(transformers=transformers, verbose_feature_names_out=False)


def _categorical_values(series: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(series, errors="coerce")
    if numeric.notna().all() and (numeric == np.floor(numeric)).all():
        return numeric.astype("int64")
    return series.astype(str)


def design_matrix(records: pd.DataFrame, covariates: Sequence[CovariateSpec]) -> DesignMatrix:
    """Build a complete-case design matrix from survival records.

    Raises:
        SchemaError: If a covariate column is missing
    """
    names = [spec.name for spec in covariates]
    missing = [n for n in names if n not in records.columns]
    if missing:
        raise SchemaError(f"Covariates missing from records: {missing}")

    subset = records[names]
    rows = subset.notna().all(axis=1).to_numpy()
    complete = subset.loc[rows].copy()
    for spec in covariates:
        if spec.kind == "categorical":
            complete[spec.name] = _categorical_values(complete[spec.name])
        else:
            complete[spec.name] = pd.to_numeric(complete[spec.name], errors="coerce").astype(float)

    n_missing = int((~rows).sum())
    if n_missing:
        logger.info(f"Dropped {n_missing:,} records with missing covariates")

    if not names:
        return DesignMatrix(np.empty((len(complete), 0)), [], rows, n_missing)

    pre = make_design_preprocessor(complete, covariates)
    X = np.asarray(pre.fit_transform(complete), dtype=float)
    return DesignMatrix(X, list(pre.get_feature_names_out()), rows, n_missing)


def check_design_rank(
    X: np.ndarray,
    names: Sequence[str],
    on_singular: SingularPolicy = SingularPolicy.DROP,
    tol: float = 1e-10,
    intercept: bool = True,
    model: Optional[str] = None,
) -> Tuple[List[int], List[str]]:
    """Find design columns that are linear combinations of preceding columns.

    Columns are scanned left to right (after an implicit intercept when
    ``intercept`` is True). A column whose unit-scaled residual sum of
    squares, after projection on the kept columns, falls below ``tol`` is
    rank deficient. Constant columns are therefore flagged too.

    Args:
        X: Design matrix without intercept
        names: Column names
        on_singular: DROP removes offending columns with a logged warning,
            RAISE raises SingularDesign on the first one
        tol: Residual tolerance (1 - R^2 of the column on the kept ones)
        intercept: Whether an intercept precedes the columns
        model: Model family, used in messages

    Returns:
        Tuple of (indices of kept columns, names of dropped columns)

    Raises:
        SingularDesign: On the first dependent column when on_singular is RAISE
    """
    on_singular = SingularPolicy(on_singular)
    X = np.asarray(X, dtype=float)
    n, p = X.shape
    offset = 1 if intercept else 0
    Z = np.column_stack([np.ones(n), X]) if intercept else X
    norms = np.linalg.norm(Z, axis=0)
    Zs = Z / np.where(norms > 0, norms, 1.0)
    G = Zs.T @ Zs

    kept: List[int] = []
    dropped: List[str] = []
    for j in range(Z.shape[1]):
        if norms[j] == 0:
            dependent = True
        elif kept:
            g = G[kept, j]
            coef = np.linalg.solve(G[np.ix_(kept, kept)], g)
            dependent = G[j, j] - g @ coef < tol
        else:
            dependent = False

        if not dependent:
            kept.append(j)
            continue
        name = names[j - offset]
        if on_singular == SingularPolicy.RAISE:
            raise SingularDesign(name, model)
        where = f" ({model})" if model else ""
        logger.warning(f"Rank-deficient design{where}: dropping column {name!r}")
        dropped.append(name)

    return [j - offset for j in kept if j >= offset], dropped
