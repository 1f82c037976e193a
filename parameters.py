# ==============================================================================
# --- VC Portfolio Model: Data Structures (v1.0) ---
# ==============================================================================
#
# This module defines the data structures shared by the portfolio simulation
# engine and the sensitivity search. Inputs (Investment, SimulationConfiguration)
# are created by the surrounding application or the YAML loader and are never
# mutated by the engine; every result structure is produced once and frozen.
#
# ==============================================================================

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple


# --------------------------------------------------------------------------
# --- Stage Definitions ---
# --------------------------------------------------------------------------

class Stage(str, Enum):
    PRE_SEED = "Pre-Seed"
    SEED = "Seed"
    SERIES_A = "Series A"
    SERIES_B = "Series B"
    SERIES_C = "Series C"
    IPO = "IPO"


# Funding sequence every investment walks through, from its entry stage onwards
STAGES_ORDER: List[Stage] = list(Stage)

# Transition-keyed parameters (progression, dilution, years to next) are keyed by the destination stage
TRANSITION_STAGES: List[Stage] = STAGES_ORDER[1:]

# Years spent getting to each stage when an investment does not specify a range
DEFAULT_YEARS_TO_NEXT: Dict[Stage, Tuple[float, float]] = {
    Stage.SEED: (1.0, 2.0),
    Stage.SERIES_A: (1.0, 3.0),
    Stage.SERIES_B: (1.0, 3.0),
    Stage.SERIES_C: (1.0, 3.0),
    Stage.IPO: (1.0, 2.0),
}

# Holding period for a company that exits at its entry stage without raising again
MIN_HOLDING_YEARS: Dict[Stage, Tuple[float, float]] = {
    Stage.PRE_SEED: (1.0, 3.0),
    Stage.SEED: (1.0, 4.0),
    Stage.SERIES_A: (2.0, 5.0),
    Stage.SERIES_B: (2.0, 6.0),
    Stage.SERIES_C: (3.0, 7.0),
    Stage.IPO: (1.0, 2.0),
}

# Valuation step-up used to price an early follow-on check, keyed by the round being joined
FOLLOW_ON_STEP_UP: Dict[Stage, Tuple[float, float]] = {
    Stage.SEED: (1.5, 3.0),
    Stage.SERIES_A: (2.0, 4.0),
    Stage.SERIES_B: (1.5, 4.0),
    Stage.SERIES_C: (1.5, 3.0),
}


def next_stage(stage: Stage) -> Optional[Stage]:
    """Returns the stage after `stage`, or None when `stage` is terminal."""
    index = STAGES_ORDER.index(stage)
    if index + 1 >= len(STAGES_ORDER):
        return None
    return STAGES_ORDER[index + 1]


# --------------------------------------------------------------------------
# --- Input Dataclasses ---
# --------------------------------------------------------------------------

# One portfolio company and the assumptions that drive its journey.
# All probabilities and rates are percentages in [0, 100]; money is in $MM.
@dataclass(frozen=True)
class Investment:
    investment_id: str
    company_name: str
    entry_stage: Stage
    # Amount the fund writes at entry
    check_size: float
    # Post-money valuation at entry; initial ownership = check_size / entry_valuation
    entry_valuation: float
    # Pr(advance into stage), keyed by destination stage (Seed ... IPO)
    stage_progression: Dict[Stage, float] = field(default_factory=dict)
    # Ownership dilution suffered in the round that opens the stage, keyed by destination stage
    dilution_rates: Dict[Stage, float] = field(default_factory=dict)
    # Pr(total loss) if the company stops at this stage, keyed by every stage
    loss_probabilities: Dict[Stage, float] = field(default_factory=dict)
    # Exit valuation range [min, max] for a company that stops at this stage
    exit_valuations: Dict[Stage, Tuple[float, float]] = field(default_factory=dict)
    # Years needed to reach the stage, keyed by destination stage
    years_to_next: Dict[Stage, Tuple[float, float]] = field(default_factory=dict)
    # Descriptive tags, only used for presets and reporting
    field: Optional[str] = None
    region: Optional[str] = None

    @property
    def initial_ownership(self) -> float:
        return self.check_size / self.entry_valuation

    def progression_to(self, stage: Stage) -> float:
        return self.stage_progression.get(stage, 0.0)

    def dilution_into(self, stage: Stage) -> float:
        return self.dilution_rates.get(stage, 0.0)

    def loss_probability_at(self, stage: Stage) -> float:
        return self.loss_probabilities.get(stage, 0.0)

    def exit_range_at(self, stage: Stage) -> Tuple[float, float]:
        return self.exit_valuations.get(stage, (0.0, 0.0))

    def years_range_to(self, stage: Stage) -> Tuple[float, float]:
        return self.years_to_next.get(stage, DEFAULT_YEARS_TO_NEXT[stage])


@dataclass(frozen=True)
class FollowOnStrategy:
    """Container for the fund's follow-on and recycling rules."""
    enable_early_follow_ons: bool = False
    # % of progressing companies that receive a follow-on check
    early_follow_on_rate: float = 20.0
    # Follow-on check size as a multiple of the original check
    early_follow_on_multiple: float = 1.0
    enable_recycling: bool = False
    # % of exit proceeds recycled into follow-ons instead of being distributed
    recycling_rate: float = 0.0
    # % of the initial checks held back to fund follow-ons. Follow-ons are only
    # written while this pool has room, so 0 disables them even when enabled.
    reserve_ratio: float = 30.0


@dataclass(frozen=True)
class SimulationConfiguration:
    num_trials: int = 100
    # One-off fee charged in year 0
    setup_fees: float = 0.0
    # Annual management fee, charged in years [0, management_fee_years)
    management_fees: float = 0.0
    management_fee_years: int = 0
    # Initial checks land in a year drawn uniformly from [0, deployment_years)
    deployment_years: int = 1
    follow_on_strategy: FollowOnStrategy = field(default_factory=FollowOnStrategy)

    @property
    def total_fees(self) -> float:
        return self.setup_fees + self.management_fees * self.management_fee_years


# --------------------------------------------------------------------------
# --- Simulation Result Dataclasses ---
# --------------------------------------------------------------------------

@dataclass(frozen=True)
class FollowOnInvestment:
    stage: Stage
    amount: float
    equity: float
    year: int


# Acts as the permanent record of one investment's journey in one trial
@dataclass(frozen=True)
class SimulationTrial:
    investment_id: str
    company_name: str
    entry_stage: Stage
    exit_stage: Stage
    # Total invested including follow-ons
    entry_amount: float
    exit_amount: float
    initial_ownership: float
    final_ownership: float
    holding_period: float
    deployment_year: int
    exit_year: int
    moic: float
    is_loss: bool
    follow_on_investments: Tuple[FollowOnInvestment, ...] = ()


# One full portfolio draw: every investment simulated once
@dataclass(frozen=True)
class PortfolioTrial:
    trials: Tuple[SimulationTrial, ...]
    invested: float
    fees: float
    recycled: float
    paid_in: float
    distributed: float
    moic: float
    irr: float
    cash_flows: Tuple[float, ...]


# Aggregate over all trials of one Monte Carlo run
@dataclass(frozen=True)
class FundMetrics:
    num_trials: int
    avg_moic: float
    avg_irr: float
    avg_distributed: float
    # Mean capital paid in per trial (invested + fees - recycled)
    total_paid_in: float
    # Fraction of trials whose portfolio MOIC is at least 1.0x
    success_rate: float
    avg_total_invested: Optional[float] = None
    avg_recycled_capital: Optional[float] = None
    avg_fees: float = 0.0
    # Initial checks + follow-on reserve + fees
    fund_size: float = 0.0
    # Distributions over capital invested in companies, before fees
    gross_moic: float = 0.0
    warnings: Tuple[str, ...] = ()
    trials: Optional[Tuple[PortfolioTrial, ...]] = field(default=None, repr=False, compare=False)


# --------------------------------------------------------------------------
# --- Sensitivity Dataclasses ---
# --------------------------------------------------------------------------

def _scaled(value: float, factor: float, lower: float = 0.0, upper: float = math.inf) -> float:
    return min(upper, max(lower, value * factor))


def _raise_stage_progression(investment: Investment, percent: float, loss_floor: float) -> Investment:
    factor = 1 + percent / 100
    return replace(investment, stage_progression={
        stage: _scaled(prob, factor, upper=100.0) for stage, prob in investment.stage_progression.items()
    })


def _cut_dilution(investment: Investment, percent: float, loss_floor: float) -> Investment:
    factor = 1 - percent / 100
    return replace(investment, dilution_rates={
        stage: _scaled(rate, factor) for stage, rate in investment.dilution_rates.items()
    })


def _cut_loss_probability(investment: Investment, percent: float, loss_floor: float) -> Investment:
    factor = 1 - percent / 100
    # Stages already below the floor keep their baseline value
    return replace(investment, loss_probabilities={
        stage: min(prob, _scaled(prob, factor, lower=loss_floor))
        for stage, prob in investment.loss_probabilities.items()
    })


def _raise_exit_valuation(investment: Investment, percent: float, loss_floor: float) -> Investment:
    factor = 1 + percent / 100
    return replace(investment, exit_valuations={
        stage: (low * factor, high * factor) for stage, (low, high) in investment.exit_valuations.items()
    })


class ParameterFamily(Enum):
    STAGE_PROGRESSION = "stage_progression"
    DILUTION = "dilution_rates"
    LOSS_PROBABILITY = "loss_probabilities"
    EXIT_VALUATION = "exit_valuations"

    @property
    def label(self) -> str:
        return _FAMILY_LABELS[self]

    @property
    def is_decrease(self) -> bool:
        """Decrease families are naturally capped at removing 100% of the baseline value."""
        return self in (ParameterFamily.DILUTION, ParameterFamily.LOSS_PROBABILITY)

    def apply(self, investment: Investment, percent: float, loss_floor: float = 0.0) -> Investment:
        """Returns a copy of `investment` with this family scaled by `percent`."""
        if percent <= 0:
            return investment
        return _FAMILY_TRANSFORMS[self](investment, percent, loss_floor)


_FAMILY_LABELS = {
    ParameterFamily.STAGE_PROGRESSION: "Stage progression",
    ParameterFamily.DILUTION: "Dilution rates",
    ParameterFamily.LOSS_PROBABILITY: "Loss probabilities",
    ParameterFamily.EXIT_VALUATION: "Exit valuations",
}

_FAMILY_TRANSFORMS = {
    ParameterFamily.STAGE_PROGRESSION: _raise_stage_progression,
    ParameterFamily.DILUTION: _cut_dilution,
    ParameterFamily.LOSS_PROBABILITY: _cut_loss_probability,
    ParameterFamily.EXIT_VALUATION: _raise_exit_valuation,
}


# A named percentage change to each parameter family. Increases and decreases are both positive numbers.
@dataclass(frozen=True)
class ParameterAdjustments:
    stage_progression_increase: float = 0.0
    dilution_decrease: float = 0.0
    loss_probability_decrease: float = 0.0
    exit_valuation_increase: float = 0.0

    @classmethod
    def single(cls, family: ParameterFamily, percent: float) -> 'ParameterAdjustments':
        return cls(**{_ADJUSTMENT_FIELDS[family]: percent})

    def for_family(self, family: ParameterFamily) -> float:
        return getattr(self, _ADJUSTMENT_FIELDS[family])

    @property
    def total(self) -> float:
        return sum(self.for_family(family) for family in ParameterFamily)

    @property
    def largest(self) -> float:
        return max(self.for_family(family) for family in ParameterFamily)

    @property
    def families_adjusted(self) -> int:
        return sum(1 for family in ParameterFamily if self.for_family(family) > 0)


_ADJUSTMENT_FIELDS = {
    ParameterFamily.STAGE_PROGRESSION: "stage_progression_increase",
    ParameterFamily.DILUTION: "dilution_decrease",
    ParameterFamily.LOSS_PROBABILITY: "loss_probability_decrease",
    ParameterFamily.EXIT_VALUATION: "exit_valuation_increase",
}


# Settings for the inverse search. Every re-simulation uses the same seed so probes share random draws.
@dataclass(frozen=True)
class SensitivityOptions:
    # Cap for increase families; decrease families are always capped at 100%
    max_adjustment_percent: float = 50.0
    # Resolution of the adjustment grid
    step_size: float = 5.0
    seed: int = 42
    # Overrides SimulationConfiguration.num_trials for search runs when set
    num_trials: Optional[int] = None
    loss_probability_floor: float = 0.0
    # Smallest single-parameter adjustment at or below which a target counts as realistic
    realistic_threshold: float = 20.0
    max_mixed_options: int = 5
    # Fallback combinations are tried while fewer than this many mixed options succeed
    min_mixed_options: int = 3
    # Factor name -> weight; None uses the module defaults in sensitivity.py
    achievability_weights: Optional[Dict[str, float]] = None
    n_workers: int = 1

    def family_limit(self, family: 'ParameterFamily') -> float:
        return 100.0 if family.is_decrease else self.max_adjustment_percent


def validate_sensitivity_options(options: SensitivityOptions) -> None:
    if not options.step_size > 0:
        raise ValueError(f"Invalid configuration: step_size must be positive, got {options.step_size}")
    if options.max_adjustment_percent < 0:
        raise ValueError(f"Invalid configuration: max_adjustment_percent must not be negative, got {options.max_adjustment_percent}")
    if options.num_trials is not None and options.num_trials <= 0:
        raise ValueError(f"Invalid configuration: num_trials must be positive, got {options.num_trials}")
    if not 0 <= options.loss_probability_floor <= 100:
        raise ValueError("Invalid configuration: loss_probability_floor must be within [0, 100]")
    if options.max_mixed_options < 0 or options.min_mixed_options < 0:
        raise ValueError("Invalid configuration: mixed option counts must not be negative")


# --------------------------------------------------------------------------
# --- Forecast Dataclasses ---
# --------------------------------------------------------------------------

# Market backdrop assumed by a forecast scenario
@dataclass(frozen=True)
class MacroeconomicFactors:
    # expansion, peak, contraction or trough
    cycle: str = "peak"
    # bullish, neutral or bearish
    sentiment: str = "neutral"
    # Policy rate in %; 2.5% is treated as neutral for valuations
    interest_rates: float = 2.5
    inflation_rate: float = 2.0
    gdp_growth_rate: float = 2.0
    # Public-market multiples relative to normal (1.0 = normal)
    public_market_multiples: float = 1.0
    # abundant, moderate or constrained
    liquidity_environment: str = "moderate"


# Outlook for one startup field (same keys as the presets)
@dataclass(frozen=True)
class SectorTrend:
    field: str
    # accelerating, stable or decelerating
    growth_outlook: str = "stable"
    # low, medium or high
    disruption_risk: str = "medium"
    regulatory_risk: str = "medium"
    competition_intensity: str = "medium"
    # abundant, moderate or limited
    funding_availability: str = "moderate"
    # Expected sector CAGR in %; 10% is treated as neutral
    expected_cagr: float = 10.0


@dataclass(frozen=True)
class ForecastScenario:
    scenario_id: str
    name: str
    # Relative weight; normalised over the scenarios analysed together
    probability: float
    macro: MacroeconomicFactors = field(default_factory=MacroeconomicFactors)
    sector_trends: Tuple[SectorTrend, ...] = ()
    description: str = ""

    def trend_for(self, field_name: Optional[str]) -> Optional[SectorTrend]:
        for trend in self.sector_trends:
            if trend.field == field_name:
                return trend
        return None


@dataclass(frozen=True)
class ScenarioForecast:
    scenario: ForecastScenario
    # Share of the total probability carried by this scenario
    weight: float
    metrics: FundMetrics


@dataclass(frozen=True)
class ForecastReport:
    baseline_metrics: FundMetrics
    forecasts: Tuple[ScenarioForecast, ...]
    expected_moic: float
    expected_irr: float
    # Probability-weighted mean distributions ($MM)
    probability_weighted_value: float

    def ranked(self) -> List[ScenarioForecast]:
        """Forecasts ordered by average MOIC, best first."""
        return sorted(self.forecasts, key=lambda f: f.metrics.avg_moic, reverse=True)

    @property
    def optimistic(self) -> ScenarioForecast:
        return self.ranked()[0]

    @property
    def realistic(self) -> ScenarioForecast:
        ranked = self.ranked()
        return ranked[len(ranked) // 2]

    @property
    def pessimistic(self) -> ScenarioForecast:
        return self.ranked()[-1]


# Everything a YAML configuration file describes
@dataclass(frozen=True)
class PortfolioConfig:
    name: str
    investments: Tuple[Investment, ...]
    simulation: SimulationConfiguration
    sensitivity: SensitivityOptions = field(default_factory=SensitivityOptions)
    # None lets the sensitivity search pick whole multiples above the baseline
    target_moics: Optional[Tuple[float, ...]] = None
    seed: Optional[int] = None
    description: str = ""
    # None means the default optimistic / base / downturn set
    forecast_scenarios: Optional[Tuple[ForecastScenario, ...]] = None


class ApproachType(str, Enum):
    BALANCED = "balanced"
    EXIT_FOCUSED = "exit-focused"
    SUCCESS_FOCUSED = "success-focused"
    CONSERVATIVE = "conservative"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class SingleParameterResult:
    family: ParameterFamily
    adjustment_percent: float
    achievable: bool
    metrics: Optional[FundMetrics] = None
    # The percentage actually needed; may exceed the allowed bound or be +inf
    actual_requirement: Optional[float] = None
    bound_violations: Tuple[str, ...] = ()

    @property
    def is_maxed_out(self) -> bool:
        """True when a decrease family has been pushed to its -100% floor."""
        return self.family.is_decrease and self.adjustment_percent >= 100


@dataclass(frozen=True)
class AchievabilityFactor:
    name: str
    score: float
    weight: float
    explanation: str


@dataclass(frozen=True)
class AchievabilityScore:
    score: float
    explanation: str
    factors: Tuple[AchievabilityFactor, ...]


@dataclass(frozen=True)
class MixedParameterOption:
    name: str
    description: str
    approach_type: ApproachType
    adjustments: ParameterAdjustments
    metrics: FundMetrics
    total_adjustment: float


@dataclass(frozen=True)
class TargetScenario:
    target_moic: float
    single_parameter_options: Tuple[SingleParameterResult, ...]
    mixed_parameter_options: Tuple[MixedParameterOption, ...]
    # Primary recipe: best mixed option, else the smallest achievable single-parameter option
    required_adjustments: Optional[ParameterAdjustments]
    adjusted_metrics: Optional[FundMetrics]
    achievability: AchievabilityScore
    is_realistic: bool
    # Decrease families already at -100% for a lower target
    suppressed_families: Tuple[ParameterFamily, ...] = ()

    @property
    def achievability_score(self) -> float:
        return self.achievability.score

    @property
    def label(self) -> str:
        if self.is_realistic:
            return "Realistic"
        if self.achievability.score >= 50:
            return "Optimistic"
        return "Very Optimistic"

    def option_for(self, family: ParameterFamily) -> Optional[SingleParameterResult]:
        return next((opt for opt in self.single_parameter_options if opt.family == family), None)


@dataclass(frozen=True)
class SensitivityReport:
    baseline_metrics: FundMetrics
    baseline_moic: float
    target_moics: Tuple[float, ...]
    target_scenarios: Tuple[TargetScenario, ...]


# --------------------------------------------------------------------------
# --- Validation ---
# --------------------------------------------------------------------------

def _validate_range(name: str, bounds: Tuple[float, float]) -> None:
    if len(bounds) != 2:
        raise ValueError(f"Invalid configuration: {name} must be a [min, max] pair, got {bounds!r}")
    low, high = bounds
    if not (math.isfinite(low) and math.isfinite(high)):
        raise ValueError(f"Invalid configuration: {name} must be finite, got {bounds!r}")
    if low > high:
        raise ValueError(f"Invalid configuration: {name} has min > max ({low} > {high})")
    if low < 0:
        raise ValueError(f"Invalid configuration: {name} must not be negative, got {bounds!r}")


def validate_investment(investment: Investment) -> None:
    """Rejects structurally invalid investments. Out-of-range percentages are clamped later, not rejected."""
    label = f"investment '{investment.investment_id}'"
    if not isinstance(investment.entry_stage, Stage):
        raise ValueError(f"Invalid configuration: {label} has unknown entry stage {investment.entry_stage!r}")
    if not investment.entry_valuation > 0:
        raise ValueError(f"Invalid configuration: {label} entry valuation must be positive")
    if not investment.check_size > 0:
        raise ValueError(f"Invalid configuration: {label} check size must be positive")
    if investment.check_size > investment.entry_valuation:
        raise ValueError(f"Invalid configuration: {label} check size exceeds entry valuation")
    for stage, bounds in investment.exit_valuations.items():
        _validate_range(f"{label} exit valuation at {stage.value}", bounds)
    for stage, bounds in investment.years_to_next.items():
        _validate_range(f"{label} years to {stage.value}", bounds)
    for name, values in (("stage progression", investment.stage_progression),
                         ("dilution rate", investment.dilution_rates),
                         ("loss probability", investment.loss_probabilities)):
        for stage, value in values.items():
            if not math.isfinite(value):
                raise ValueError(f"Invalid configuration: {label} {name} at {stage.value} is not finite")


def validate_configuration(config: SimulationConfiguration) -> None:
    if config.num_trials <= 0:
        raise ValueError(f"Invalid configuration: num_trials must be positive, got {config.num_trials}")
    if config.deployment_years <= 0:
        raise ValueError(f"Invalid configuration: deployment_years must be positive, got {config.deployment_years}")
    if config.setup_fees < 0 or config.management_fees < 0 or config.management_fee_years < 0:
        raise ValueError("Invalid configuration: fees and fee years must not be negative")
    if config.follow_on_strategy.early_follow_on_multiple < 0:
        raise ValueError("Invalid configuration: early_follow_on_multiple must not be negative")


def validate_inputs(investments: List[Investment], config: SimulationConfiguration) -> None:
    validate_configuration(config)
    seen = set()
    for investment in investments:
        validate_investment(investment)
        if investment.investment_id in seen:
            raise ValueError(f"Invalid configuration: duplicate investment id '{investment.investment_id}'")
        seen.add(investment.investment_id)
