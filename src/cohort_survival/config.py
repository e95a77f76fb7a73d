"""Configuration objects for the cohort survival engine.

Every component receives its configuration explicitly; nothing is read from
module-level state. All configuration dataclasses are frozen so a single
``EngineConfig`` can be shared read-only between outcomes and worker processes.

The module provides:
- ExecutionConfig: sequential or joblib-parallel execution of outcomes
- CohortConfig: birth-period index, period boundaries, collapsed exposures,
  censoring-age derivation and cohort exclusion rules
- OutcomeSpec / SourceSpec: onset-age source precedence per outcome
- ModelConfig: covariates, tie handling, optimiser and variance settings
- ReferenceTarget: published values used for validation
- EngineConfig: master configuration with JSON round trip and the preset for
  the sugar-rationing reference analysis
"""
from __future__ import annotations
from enum import Enum
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Tuple, Any
import os
import multiprocessing
import json

from cohort_survival.errors import ConfigurationError


class ExecutionMode(str, Enum):
    """Execution mode for running outcomes.

    Attributes:
        SEQUENTIAL: Run outcomes one after another in the calling process
        MULTIPROCESSING: Run outcomes in parallel with joblib
    """
    SEQUENTIAL = "sequential"
    MULTIPROCESSING = "mp"


class ResolutionStrategy(str, Enum):
    """How competing onset-age sources are resolved for one outcome."""
    PRECEDENCE = "precedence"
    EARLIEST_WINS = "earliest_wins"


class TieMethod(str, Enum):
    """Tie handling for the Cox partial likelihood."""
    EFRON = "efron"
    BRESLOW = "breslow"


class VarianceType(str, Enum):
    """Variance estimator used for reported standard errors.

    Attributes:
        MODEL: Inverse observed information
        ROBUST: White sandwich with per-subject score residuals
        CLUSTER: Sandwich with score residuals summed within clusters
        BOOTSTRAP: Block bootstrap resampling whole clusters (Gompertz only)
    """
    MODEL = "model"
    ROBUST = "robust"
    CLUSTER = "cluster"
    BOOTSTRAP = "bootstrap"


class CIMethod(str, Enum):
    """Transform used for Kaplan-Meier confidence bands."""
    LOG_LOG = "log-log"
    LINEAR = "linear"


class SingularPolicy(str, Enum):
    """What to do with a rank-deficient design matrix."""
    DROP = "drop"
    RAISE = "raise"


@dataclass(frozen=True)
class ExecutionConfig:
    """Configuration for execution mode and parallelization.

    Attributes:
        mode: Execution mode (sequential or mp)
        n_jobs: Number of parallel jobs. -1 means use all cores, 1 means sequential
        verbose: Verbosity level for joblib (0=silent, 10=progress bar, 50=detailed)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')

    Example:
        >>> config = ExecutionConfig()
        >>> config = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
    """
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.mode, str):
            object.__setattr__(self, "mode", ExecutionMode(self.mode))

        if self.n_jobs == -1:
            object.__setattr__(self, "n_jobs", multiprocessing.cpu_count())
        elif self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or positive, got {self.n_jobs}")

        if self.mode == ExecutionMode.SEQUENTIAL:
            object.__setattr__(self, "n_jobs", 1)

    def is_parallel(self) -> bool:
        """Check if parallel execution is enabled.

        Returns:
            True if execution mode supports parallelism and n_jobs > 1
        """
        return self.mode != ExecutionMode.SEQUENTIAL and self.n_jobs > 1

    def __str__(self) -> str:
        return (
            f"ExecutionConfig(mode={self.mode.value}, "
            f"n_jobs={self.n_jobs}, "
            f"parallel={self.is_parallel()})"
        )


def create_execution_config(mode: Optional[str] = None, n_jobs: int = -1, verbose: int = 0) -> ExecutionConfig:
    """Factory function to create ExecutionConfig from CLI-style arguments.

    Args:
        mode: Execution mode string ('sequential', 'mp'). None means sequential
        n_jobs: Number of parallel jobs (-1 = all cores)
        verbose: Verbosity level passed to joblib

    Returns:
        ExecutionConfig instance
    """
    execution_mode = ExecutionMode.SEQUENTIAL if mode is None else ExecutionMode(mode)
    return ExecutionConfig(mode=execution_mode, n_jobs=n_jobs, verbose=verbose)


# ============================================================================
# Cohort Configuration
# ============================================================================

@dataclass(frozen=True)
class PeriodBoundary:
    """Inclusive range of birth-period indices assigned to one period id."""
    period_id: int
    lower: float
    upper: float

    def __post_init__(self):
        if self.lower > self.upper:
            raise ConfigurationError(
                f"Period {self.period_id}: lower bound {self.lower} exceeds upper bound {self.upper}"
            )

    def contains(self, index: float) -> bool:
        return self.lower <= index <= self.upper


@dataclass(frozen=True)
class PeriodIndexSpec:
    """Parameters of the birth-period index.

    index = (birth_year - epoch_year) * periods_per_year
            + floor((birth_month - 1) / months_per_period) + offset
    """
    epoch_year: int = 1960
    periods_per_year: int = 4
    months_per_period: int = 3
    offset: int = 0

    def __post_init__(self):
        if self.periods_per_year * self.months_per_period != 12:
            raise ConfigurationError(
                f"periods_per_year ({self.periods_per_year}) x months_per_period "
                f"({self.months_per_period}) must cover 12 months"
            )


@dataclass(frozen=True)
class CollapseSpec:
    """Many-to-one mapping from fine period ids to a coarser classification.

    Attributes:
        name: Output column name (e.g. "utero")
        mapping: Pairs of (fine period id, coarse level)
        labels: Pairs of (coarse level, display label)
        reference: Reference level used in regression designs
    """
    name: str
    mapping: Tuple[Tuple[int, int], ...]
    labels: Tuple[Tuple[int, str], ...] = ()
    reference: Optional[int] = None

    def as_dict(self) -> dict:
        return dict(self.mapping)

    def label_map(self) -> dict:
        return dict(self.labels)


@dataclass(frozen=True)
class ExclusionSpec:
    """Cohort exclusion rule evaluated on one raw column.

    Attributes:
        name: Human-readable rule name used in drop accounting
        column: Column the rule reads
        rule: One of "in" (value in ``values``), "not_null" (any value present)
        values: Values that trigger exclusion for rule "in"
    """
    name: str
    column: str
    rule: str = "in"
    values: Tuple[float, ...] = ()

    def __post_init__(self):
        if self.rule not in ("in", "not_null"):
            raise ConfigurationError(f"Unknown exclusion rule {self.rule!r} for {self.name!r}")


@dataclass(frozen=True)
class DerivationSpec:
    """Derived covariate built from raw columns before modelling.

    Attributes:
        name: Output column name
        method: One of "standardize", "threshold", "deciles", "in_set",
            "year_dummies"
        source: Input column
        params: Method parameters as (key, value) pairs
    """
    name: str
    method: str
    source: str
    params: Tuple[Tuple[str, Any], ...] = ()

    def param(self, key: str, default=None):
        return dict(self.params).get(key, default)


@dataclass(frozen=True)
class CohortConfig:
    """Configuration for exposure classification and censoring-age derivation.

    Attributes:
        id_column: Unique subject identifier
        birth_year_column: Raw birth year column
        birth_month_column: Raw birth month column (1-12)
        epoch: Reference date for epoch-day encoded dates (day 0)
        index: Birth-period index parameters
        periods: Fine period boundaries over the birth-period index
        fine_column: Output column holding the fine period id
        fine_reference: Reference period for regression designs
        fine_labels: Pairs of (period id, display label)
        collapses: Collapsed classifications derived from the fine periods
        cluster_column: Output column holding the year-month-of-birth cluster key
        assessment_columns: ISO-date columns whose maximum rounded age gives the
            censoring age
        censoring_cap: Administrative follow-up limit in years of age
        exclusions: Cohort exclusion rules applied before classification
        derivations: Derived covariates, computed on the full extract before
            any exclusion so that standardised scores and quantile cut points
            use every subject
        complete_controls: Columns that must be non-missing for a subject to
            stay in the analysed cohort (derived columns and
            ``censoring_age`` allowed); applied after classification
    """
    id_column: str = "eid"
    birth_year_column: str = "birth_year"
    birth_month_column: str = "birth_month"
    epoch: date = date(1960, 1, 1)
    index: PeriodIndexSpec = field(default_factory=PeriodIndexSpec)
    periods: Tuple[PeriodBoundary, ...] = ()
    fine_column: str = "period"
    fine_reference: Optional[int] = None
    fine_labels: Tuple[Tuple[int, str], ...] = ()
    collapses: Tuple[CollapseSpec, ...] = ()
    cluster_column: str = "yearmobirth"
    assessment_columns: Tuple[str, ...] = ()
    censoring_cap: float = 66.0
    exclusions: Tuple[ExclusionSpec, ...] = ()
    derivations: Tuple[DerivationSpec, ...] = ()
    complete_controls: Tuple[str, ...] = ()

    def classification_columns(self) -> Tuple[str, ...]:
        return (self.fine_column,) + tuple(c.name for c in self.collapses)

    def reference_level(self, column: str) -> Optional[int]:
        if column == self.fine_column:
            return self.fine_reference
        for spec in self.collapses:
            if spec.name == column:
                return spec.reference
        raise ConfigurationError(f"Unknown classification column {column!r}")

    def level_labels(self, column: str) -> dict:
        if column == self.fine_column:
            return dict(self.fine_labels)
        for spec in self.collapses:
            if spec.name == column:
                return spec.label_map()
        raise ConfigurationError(f"Unknown classification column {column!r}")


# ============================================================================
# Outcome Configuration
# ============================================================================

@dataclass(frozen=True)
class SourceSpec:
    """One candidate onset-age source for an outcome.

    Attributes:
        column: Raw column holding the onset
        kind: "age" (years of age) or "date" (converted to age via birth date)
        encoding: Date encoding for kind="date" ("epoch_day" or "iso")
        override_if_earlier: Under PRECEDENCE, replaces the winning value when
            this source holds a plausible earlier onset
        apply_exclusion: Whether the outcome's exclusion field suppresses this
            source's value
    """
    column: str
    kind: str = "age"
    encoding: str = "epoch_day"
    override_if_earlier: bool = False
    apply_exclusion: bool = True

    def __post_init__(self):
        if self.kind not in ("age", "date"):
            raise ConfigurationError(f"Source {self.column!r}: kind must be 'age' or 'date'")


@dataclass(frozen=True)
class OutcomeSpec:
    """Onset-age resolution rules for one outcome.

    Attributes:
        name: Outcome label (e.g. "T2DM")
        sources: Candidate sources in precedence order
        strategy: PRECEDENCE or EARLIEST_WINS
        min_plausible_age: Onset ages below this are coding errors and discarded
        exclusion_field: Auxiliary field that, when truthy, suppresses the
            outcome for every source with ``apply_exclusion``
        administrative_cap: Onsets above the cap are censored at the cap
        winsorize_lower_quantile: Optional lower winsorisation of the value
            resolved from the non-override sources, computed over the cohort
    """
    name: str
    sources: Tuple[SourceSpec, ...]
    strategy: ResolutionStrategy = ResolutionStrategy.PRECEDENCE
    min_plausible_age: Optional[float] = None
    exclusion_field: Optional[str] = None
    administrative_cap: float = 66.0
    winsorize_lower_quantile: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.strategy, str):
            object.__setattr__(self, "strategy", ResolutionStrategy(self.strategy))
        if not self.sources:
            raise ConfigurationError(f"Outcome {self.name!r} has no onset sources")
        if self.administrative_cap <= 0:
            raise ConfigurationError(f"Outcome {self.name!r}: administrative_cap must be positive")


# ============================================================================
# Model Configuration
# ============================================================================

@dataclass(frozen=True)
class CovariateSpec:
    """One model covariate.

    Attributes:
        name: Column name
        kind: "categorical" (one-hot with reference level) or "continuous"
        reference: Reference level for categorical covariates (defaults to the
            smallest observed level)
    """
    name: str
    kind: str = "continuous"
    reference: Optional[Any] = None

    def __post_init__(self):
        if self.kind not in ("categorical", "continuous"):
            raise ConfigurationError(f"Covariate {self.name!r}: kind must be 'categorical' or 'continuous'")


@dataclass(frozen=True)
class ModelConfig:
    """Hazard-model settings shared by the Gompertz and Cox fitters.

    Attributes:
        exposures: Classification columns fitted as the exposure term, one
            model per column
        covariates: Adjustment covariates in design order
        tie_method: Cox tie handling
        gompertz_variance: Variance estimator for Gompertz standard errors
        cox_variance: Variance estimator for Cox standard errors
        alpha: Significance level for confidence intervals
        max_iter: Iteration cap for both optimisers
        gtol: Gradient-norm convergence tolerance
        step_tol: Parameter-step convergence tolerance (Cox Newton-Raphson)
        on_singular: Drop offending design columns or raise SingularDesign
        rank_tol: Residual-variance tolerance for the design rank check
        n_bootstrap: Bootstrap replicates for VarianceType.BOOTSTRAP
        seed: Seed for every stochastic step
        small_sample_adjustment: Multiply cluster sandwich by G/(G-1)
        km_group_column: Classification column stratifying Kaplan-Meier curves
        km_min_age: Left-truncation age for Kaplan-Meier curves
        km_ci_method: Confidence band transform
        logrank_columns: Classification columns compared with log-rank tests
        fit_cox: Whether to fit the Cox model alongside the Gompertz model
    """
    exposures: Tuple[str, ...] = ("period",)
    covariates: Tuple[CovariateSpec, ...] = ()
    tie_method: TieMethod = TieMethod.EFRON
    gompertz_variance: VarianceType = VarianceType.MODEL
    cox_variance: VarianceType = VarianceType.CLUSTER
    alpha: float = 0.05
    max_iter: int = 200
    gtol: float = 1e-6
    step_tol: float = 1e-9
    on_singular: SingularPolicy = SingularPolicy.DROP
    rank_tol: float = 1e-10
    n_bootstrap: int = 200
    seed: int = 20260220
    small_sample_adjustment: bool = False
    km_group_column: Optional[str] = None
    km_min_age: float = 0.0
    km_ci_method: CIMethod = CIMethod.LOG_LOG
    logrank_columns: Tuple[str, ...] = ()
    fit_cox: bool = True

    def __post_init__(self):
        for name, enum in (
            ("tie_method", TieMethod),
            ("gompertz_variance", VarianceType),
            ("cox_variance", VarianceType),
            ("on_singular", SingularPolicy),
            ("km_ci_method", CIMethod),
        ):
            value = getattr(self, name)
            if isinstance(value, str) and not isinstance(value, enum):
                object.__setattr__(self, name, enum(value))
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be positive, got {self.max_iter}")
        if self.cox_variance == VarianceType.BOOTSTRAP:
            raise ConfigurationError("Bootstrap variance is only available for the Gompertz model")


@dataclass(frozen=True)
class ReferenceTarget:
    """Published hazard ratio used to validate one estimate.

    Attributes:
        outcome: Outcome label
        exposure: Exposure level label
        value: Published hazard ratio
        tolerance: Absolute tolerance on the hazard ratio scale
        model: Model family the target refers to ("gompertz" or "cox")
        exposure_column: Classification column the level belongs to
    """
    outcome: str
    exposure: str
    value: float
    tolerance: float = 0.05
    model: str = "gompertz"
    exposure_column: str = "period"

    def __post_init__(self):
        if self.tolerance <= 0:
            raise ConfigurationError(f"Tolerance must be positive for target {self.outcome}/{self.exposure}")


# ============================================================================
# Master Configuration
# ============================================================================

@dataclass(frozen=True)
class EngineConfig:
    """Master configuration threaded through every component call.

    Attributes:
        cohort: Exposure classification and censoring configuration
        outcomes: Outcome definitions, each analysed independently
        model: Hazard-model configuration
        execution: Execution mode and parallelization configuration
        references: Reference targets for validation
        description: Optional description of this configuration

    Example:
        >>> config = EngineConfig.sugar_rationing()
        >>> config.save("configs/sugar_rationing.json")
        >>> loaded = EngineConfig.load("configs/sugar_rationing.json")
        >>> loaded == config
        True
    """
    cohort: CohortConfig = field(default_factory=CohortConfig)
    outcomes: Tuple[OutcomeSpec, ...] = ()
    model: ModelConfig = field(default_factory=ModelConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    references: Tuple[ReferenceTarget, ...] = ()
    description: str = ""

    def __post_init__(self):
        names = [o.name for o in self.outcomes]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Duplicate outcome names: {names}")
        known = set(self.cohort.classification_columns())
        grouping = tuple(self.model.logrank_columns)
        if self.model.km_group_column is not None:
            grouping += (self.model.km_group_column,)
        for column in tuple(self.model.exposures) + grouping:
            if column not in known:
                raise ConfigurationError(
                    f"Column {column!r} is not produced by the cohort classifier "
                    f"(known: {sorted(known)})"
                )

    def outcome(self, name: str) -> OutcomeSpec:
        for spec in self.outcomes:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def to_dict(self) -> dict:
        """Convert configuration to a JSON-serialisable dictionary."""
        def _convert(obj):
            if hasattr(obj, "__dataclass_fields__"):
                return {k: _convert(getattr(obj, k)) for k in obj.__dataclass_fields__}
            elif isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, date):
                return obj.isoformat()
            elif isinstance(obj, (tuple, list)):
                return [_convert(v) for v in obj]
            else:
                return obj

        return _convert(self)

    def save(self, path: str) -> None:
        """Save configuration to JSON file.

        Args:
            path: Path to output JSON file
        """
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Rebuild an EngineConfig from ``to_dict`` output."""
        def _pairs(items):
            return tuple(tuple(p) for p in items)

        c = dict(data["cohort"])
        cohort = CohortConfig(
            id_column=c["id_column"],
            birth_year_column=c["birth_year_column"],
            birth_month_column=c["birth_month_column"],
            epoch=date.fromisoformat(c["epoch"]),
            index=PeriodIndexSpec(**c["index"]),
            periods=tuple(PeriodBoundary(**p) for p in c["periods"]),
            fine_column=c["fine_column"],
            fine_reference=c["fine_reference"],
            fine_labels=_pairs(c["fine_labels"]),
            collapses=tuple(
                CollapseSpec(
                    name=s["name"],
                    mapping=_pairs(s["mapping"]),
                    labels=_pairs(s["labels"]),
                    reference=s["reference"],
                )
                for s in c["collapses"]
            ),
            cluster_column=c["cluster_column"],
            assessment_columns=tuple(c["assessment_columns"]),
            censoring_cap=c["censoring_cap"],
            exclusions=tuple(
                ExclusionSpec(name=e["name"], column=e["column"], rule=e["rule"], values=tuple(e["values"]))
                for e in c["exclusions"]
            ),
            derivations=tuple(
                DerivationSpec(
                    name=d["name"],
                    method=d["method"],
                    source=d["source"],
                    params=tuple((k, tuple(v) if isinstance(v, list) else v) for k, v in d["params"]),
                )
                for d in c["derivations"]
            ),
            complete_controls=tuple(c.get("complete_controls", ())),
        )
        outcomes = tuple(
            OutcomeSpec(
                name=o["name"],
                sources=tuple(SourceSpec(**s) for s in o["sources"]),
                strategy=ResolutionStrategy(o["strategy"]),
                min_plausible_age=o["min_plausible_age"],
                exclusion_field=o["exclusion_field"],
                administrative_cap=o["administrative_cap"],
                winsorize_lower_quantile=o["winsorize_lower_quantile"],
            )
            for o in data["outcomes"]
        )
        m = dict(data["model"])
        m["exposures"] = tuple(m["exposures"])
        m["logrank_columns"] = tuple(m.get("logrank_columns", ()))
        m["covariates"] = tuple(CovariateSpec(**cv) for cv in m["covariates"])
        model = ModelConfig(**m)
        return cls(
            cohort=cohort,
            outcomes=outcomes,
            model=model,
            execution=ExecutionConfig(**data["execution"]),
            references=tuple(ReferenceTarget(**r) for r in data["references"]),
            description=data.get("description", ""),
        )

    @classmethod
    def load(cls, path: str) -> "EngineConfig":
        """Load configuration from JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def sugar_rationing(cls) -> "EngineConfig":
        """Configuration of the sugar-rationing birth-cohort reference analysis.

        Birth-period index: quarters since Q1 1960 plus 41, so rationing ends
        between index 18 and 19. Nine study periods cover indices 8-25;
        anything outside that window is unclassified and dropped.
        Outcomes are type 2 diabetes (earliest of hospital and self-reported
        onset, insulin within a year of diagnosis excludes both) and
        hypertension (first hospital record, self-report overrides when
        earlier, hospital ages winsorised at the 1st percentile).
        """
        periods = (
            PeriodBoundary(1, 25, 25),
            PeriodBoundary(2, 23, 24),
            PeriodBoundary(3, 21, 22),
            PeriodBoundary(4, 19, 20),
            PeriodBoundary(5, 16, 18),
            PeriodBoundary(6, 14, 15),
            PeriodBoundary(7, 12, 13),
            PeriodBoundary(8, 10, 11),
            PeriodBoundary(9, 8, 9),
        )
        cohort = CohortConfig(
            id_column="eid",
            birth_year_column="n_34_0_0",
            birth_month_column="n_52_0_0",
            epoch=date(1960, 1, 1),
            index=PeriodIndexSpec(epoch_year=1960, periods_per_year=4, months_per_period=3, offset=41),
            periods=periods,
            fine_column="study",
            fine_reference=4,
            fine_labels=(
                (1, "-27m"), (2, "-21m"), (3, "-15m"), (4, "Ref"), (5, "In-utero"),
                (6, "+6m"), (7, "+12m"), (8, "+18m"), (9, "+24m"),
            ),
            collapses=(
                CollapseSpec(
                    name="years_ration22",
                    mapping=((1, 0), (2, 0), (3, 0), (4, 0), (5, 1), (6, 2), (7, 2), (8, 3), (9, 3)),
                    labels=((0, "Never"), (1, "In-utero"), (2, "In-utero+1yr"), (3, "In-utero+2yr")),
                    reference=0,
                ),
                CollapseSpec(
                    name="utero",
                    mapping=((1, 0), (2, 0), (3, 0), (4, 0), (5, 1), (6, 2), (7, 2), (8, 2), (9, 2)),
                    labels=((0, "Never"), (1, "In-utero"), (2, "Up to 2yr")),
                    reference=0,
                ),
                CollapseSpec(
                    name="sugar_rationed2",
                    mapping=((1, 0), (2, 0), (3, 0), (4, 0), (5, 1), (6, 1), (7, 1), (8, 1), (9, 1)),
                    labels=((0, "Never"), (1, "Rationed")),
                    reference=0,
                ),
            ),
            cluster_column="yearmobirth",
            assessment_columns=("p53_i0", "p53_i1", "p53_i2", "p53_i3"),
            censoring_cap=66.0,
            exclusions=(
                ExclusionSpec("born_outside_uk", "n_1647", "in", (5.0, 6.0)),
                ExclusionSpec("adopted", "n_1767", "in", (1.0,)),
                ExclusionSpec("multiple_birth", "n_1777", "in", (1.0,)),
                ExclusionSpec("immigrant", "n_3659", "not_null"),
            ),
            derivations=(
                DerivationSpec("male", "in_set", "n_31_0_0", (("values", (1.0,)),)),
                DerivationSpec("Wales", "in_set", "n_1647", (("values", (2.0,)), ("negative_missing", True))),
                DerivationSpec("Scotland", "in_set", "n_1647", (("values", (3.0,)), ("negative_missing", True))),
                DerivationSpec(
                    "nonwhite", "in_set", "n_21000",
                    (("values", (1001.0, 1002.0, 1003.0)), ("negate", True)),
                ),
                DerivationSpec("zpgi", "standardize", "BMIscore"),
                DerivationSpec("zpgi_bmi2", "threshold", "zpgi", (("value", -0.5),)),
                DerivationSpec("decile_north", "deciles", "n_129_0_0", (("q", 10), ("negative_missing", True))),
                DerivationSpec("decile_east", "deciles", "n_130_0_0", (("q", 10), ("negative_missing", True))),
                DerivationSpec("fsy", "year_dummies", "p53_i0", (("levels", (2, 3, 4)),)),
            ),
            complete_controls=("male", "n_52_0_0", "zpgi", "Wales", "Scotland", "nonwhite", "censoring_age"),
        )

        outcomes = (
            OutcomeSpec(
                name="T2DM",
                sources=(
                    SourceSpec("ts_130708_0_0", kind="date", encoding="epoch_day"),
                    SourceSpec("n_2976", kind="age"),
                ),
                strategy=ResolutionStrategy.EARLIEST_WINS,
                min_plausible_age=36.0,
                exclusion_field="n_2986",
                administrative_cap=66.0,
            ),
            OutcomeSpec(
                name="Hypertension",
                sources=(
                    SourceSpec("ts_131286_0_0", kind="date", encoding="epoch_day"),
                    SourceSpec("ts_131294_0_0", kind="date", encoding="epoch_day"),
                    SourceSpec("n_2966", kind="age", override_if_earlier=True),
                ),
                strategy=ResolutionStrategy.PRECEDENCE,
                administrative_cap=66.0,
                winsorize_lower_quantile=0.01,
            ),
        )

        covariates = (
            CovariateSpec("male"),
            CovariateSpec("n_52_0_0", kind="categorical", reference=1),
            CovariateSpec("Wales"),
            CovariateSpec("Scotland"),
            CovariateSpec("nonwhite"),
            CovariateSpec("zpgi_bmi2", kind="categorical", reference=0),
            CovariateSpec("decile_north", kind="categorical", reference=0),
            CovariateSpec("decile_north_imp"),
            CovariateSpec("decile_east", kind="categorical", reference=0),
            CovariateSpec("decile_east_imp"),
            CovariateSpec("fsy_2"),
            CovariateSpec("fsy_3"),
            CovariateSpec("fsy_4"),
        )
        model = ModelConfig(
            exposures=("years_ration22", "study"),
            covariates=covariates,
            tie_method=TieMethod.EFRON,
            gompertz_variance=VarianceType.MODEL,
            cox_variance=VarianceType.CLUSTER,
            km_group_column="utero",
            km_min_age=34.0,
            km_ci_method=CIMethod.LOG_LOG,
            logrank_columns=("sugar_rationed2", "utero"),
        )

        published = (
            ("T2DM", "In-utero", 0.65),
            ("T2DM", "In-utero+1yr", 0.64),
            ("T2DM", "In-utero+2yr", 0.60),
            ("Hypertension", "In-utero", 0.77),
            ("Hypertension", "In-utero+1yr", 0.77),
            ("Hypertension", "In-utero+2yr", 0.74),
        )
        references = tuple(
            ReferenceTarget(outcome, exposure, value, tolerance=0.05,
                            model="gompertz", exposure_column="years_ration22")
            for outcome, exposure, value in published
        )

        return cls(
            cohort=cohort,
            outcomes=outcomes,
            model=model,
            references=references,
            description="Sugar rationing in the first 1000 days: Gompertz and Cox hazard ratios",
        )
