from __future__ import annotations
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Iterable, List, Mapping, Optional
import numpy as np
import pandas as pd

from cohort_survival.config import ReferenceTarget
from cohort_survival.models import FittedModel

HR_COLUMNS = [
    "outcome", "model", "term_prefix", "term", "level", "exposure",
    "hr", "ci_lower", "ci_upper", "se", "p",
]


class Verdict(str, Enum):
    """Overall agreement with the reference targets.

    Attributes:
        REPLICATED: Every target is matched within tolerance
        PARTIAL: Some targets miss, none by more than twice the tolerance
        FAILED: At least one target misses by more than twice its tolerance
            (or has no estimate)
    """
    REPLICATED = "REPLICATED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


def _parse_level(text: str):
    try:
        return int(text)
    except ValueError:
        try:
            return float(text)
        except ValueError:
            return text


def extract_hazard_ratios(
    model: FittedModel,
    term_prefix: str,
    labels: Optional[Mapping] = None,
    alpha: float = 0.05,
    include_reference: bool = False,
    reference_level=None,
    outcome: Optional[str] = None,
) -> pd.DataFrame:
    """Hazard ratio table for the exposure terms of a fitted model.

    Terms are selected by name: a categorical covariate ``c`` contributes
    terms ``c_<level>``. The model is not modified.

    Args:
        model: Fitted Gompertz or Cox model
        term_prefix: Covariate whose terms are extracted
        labels: Mapping level -> display label (levels without a label are
            shown as-is)
        alpha: Significance level for the Wald confidence interval
        include_reference: Append the reference level with HR 1 and no p-value
        reference_level: Reference level for ``include_reference``
        outcome: Outcome name copied onto every row

    Returns:
        DataFrame with columns outcome, model, term_prefix, term, level,
        exposure, hr, ci_lower, ci_upper, se, p, sorted by level

    Example:
        >>> table = extract_hazard_ratios(fitted, "years_ration22",
        ...                               labels={1: "In-utero"}, outcome="T2DM")
        >>> table[["exposure", "hr", "ci_lower", "ci_upper"]]
    """
    labels = dict(labels or {})
    summary = model.summary(alpha=alpha)
    marker = f"{term_prefix}_"
    rows = []
    for term, row in summary.iterrows():
        if not term.startswith(marker):
            continue
        level = _parse_level(term[len(marker):])
        rows.append({
            "outcome": outcome,
            "model": model.family,
            "term_prefix": term_prefix,
            "term": term,
            "level": level,
            "exposure": labels.get(level, str(level)),
            "hr": row["hr"],
            "ci_lower": row["ci_lower"],
            "ci_upper": row["ci_upper"],
            "se": row["se"],
            "p": row["p"],
        })
    if include_reference and reference_level is not None:
        rows.append({
            "outcome": outcome,
            "model": model.family,
            "term_prefix": term_prefix,
            "term": f"{marker}{reference_level}",
            "level": reference_level,
            "exposure": labels.get(reference_level, str(reference_level)),
            "hr": 1.0,
            "ci_lower": 1.0,
            "ci_upper": 1.0,
            "se": np.nan,
            "p": np.nan,
        })
    table = pd.DataFrame(rows, columns=HR_COLUMNS)
    if table["level"].map(lambda v: isinstance(v, str)).any():
        table = table.sort_values("level", key=lambda s: s.astype(str))
    else:
        table = table.sort_values("level")
    return table.reset_index(drop=True)


@dataclass
class ValidationRow:
    """Comparison of one estimate with its reference target."""
    outcome: str
    exposure: str
    model: str
    estimate: float
    reference: float
    tolerance: float
    difference: float
    passed: bool
    miss_ratio: float


@dataclass
class ValidationResult:
    rows: List[ValidationRow]
    verdict: Verdict

    @property
    def n_passed(self) -> int:
        return sum(r.passed for r in self.rows)

    def to_frame(self) -> pd.DataFrame:
        columns = list(ValidationRow.__dataclass_fields__)
        frame = pd.DataFrame([asdict(r) for r in self.rows], columns=columns)
        frame["verdict"] = self.verdict.value
        return frame


def _match(table: pd.DataFrame, target: ReferenceTarget) -> pd.DataFrame:
    mask = (table["outcome"] == target.outcome) & (table["exposure"] == target.exposure)
    if "model" in table.columns:
        mask &= table["model"] == target.model
    if "term_prefix" in table.columns:
        mask &= table["term_prefix"] == target.exposure_column
    return table.loc[mask]


def verdict_for(rows: Iterable[ValidationRow]) -> Verdict:
    """REPLICATED if every row passes, FAILED if any misses by more than 2x tolerance, else PARTIAL."""
    rows = list(rows)
    if all(r.passed for r in rows):
        return Verdict.REPLICATED
    if any(r.miss_ratio > 2 for r in rows):
        return Verdict.FAILED
    return Verdict.PARTIAL


def validate_against_reference(table: pd.DataFrame, targets: Iterable[ReferenceTarget]) -> ValidationResult:
    """Score hazard ratio estimates against reference targets.

    Estimates without a target are not scored. A target without an estimate
    is a failed row with an infinite miss ratio.

    Args:
        table: Hazard ratio table (``extract_hazard_ratios`` rows, possibly
            concatenated over outcomes and models)
        targets: Reference targets

    Returns:
        ValidationResult with one row per target and the overall verdict
    """
    rows = []
    for target in targets:
        matched = _match(table, target) if not table.empty else table
        if matched.empty:
            rows.append(ValidationRow(
                outcome=target.outcome,
                exposure=target.exposure,
                model=target.model,
                estimate=np.nan,
                reference=target.value,
                tolerance=target.tolerance,
                difference=np.nan,
                passed=False,
                miss_ratio=np.inf,
            ))
            continue
        estimate = float(matched["hr"].iloc[0])
        difference = estimate - target.value
        miss_ratio = abs(difference) / target.tolerance if np.isfinite(difference) else np.inf
        rows.append(ValidationRow(
            outcome=target.outcome,
            exposure=target.exposure,
            model=target.model,
            estimate=estimate,
            reference=target.value,
            tolerance=target.tolerance,
            difference=difference,
            passed=bool(np.isfinite(difference) and abs(difference) <= target.tolerance + 1e-9),
            miss_ratio=miss_ratio,
        ))
    return ValidationResult(rows=rows, verdict=verdict_for(rows))
