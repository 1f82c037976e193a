# ==============================================================================
# --- VC Portfolio Model: Sensitivity (Inverse) Search (v1.0) ---
# ==============================================================================
#
# Back-solves which assumption changes lift the portfolio's average MOIC to a
# set of target multiples. For every target it reports the smallest change to
# each parameter family on its own, a handful of ranked multi-family recipes,
# and a 0-100 achievability score.
#
# All re-simulations share one seed, so two probes differ only by their
# parameters and the search sees a monotone, noise-free response.
#
# ==============================================================================
import logging
import math
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

import engine as vcm
from engine import ProgressCallback, SimulationCancelled
from parameters import (
    AchievabilityFactor, AchievabilityScore, ApproachType, FundMetrics, Investment,
    MixedParameterOption, ParameterAdjustments, ParameterFamily, SensitivityOptions,
    SensitivityReport, SimulationConfiguration, SingleParameterResult, TargetScenario,
    validate_inputs, validate_sensitivity_options,
)

# Composite achievability weights, keyed by factor name
ACHIEVABILITY_WEIGHTS: Dict[str, float] = {
    "Baseline Proximity": 0.3,
    "Smallest Single Adjustment": 0.3,
    "Adjustment Magnitude": 0.2,
    "Market Realism": 0.2,
}

# Weights are (stage progression, dilution, loss probability, exit valuation) shares of max_adjustment_percent
STRATEGIC_COMBINATIONS = [
    ("Conservative Balanced", "Moderate improvements across all parameters with emphasis on exit valuations",
     ApproachType.CONSERVATIVE, (0.2, 0.15, 0.2, 0.4)),
    ("Balanced Optimization", "Equal weight to all key performance drivers",
     ApproachType.BALANCED, (0.3, 0.25, 0.3, 0.35)),
    ("Exit Value Maximization", "Focus on higher exit valuations with minimal other changes",
     ApproachType.EXIT_FOCUSED, (0.15, 0.15, 0.2, 0.7)),
    ("Success Rate Optimization", "Maximize portfolio success rate through progression and risk reduction",
     ApproachType.SUCCESS_FOCUSED, (0.45, 0.25, 0.5, 0.25)),
    ("Ownership Preservation", "Minimize dilution while improving success metrics",
     ApproachType.BALANCED, (0.35, 0.6, 0.35, 0.3)),
    ("High-Growth Aggressive", "Aggressive improvements across all metrics for ambitious targets",
     ApproachType.AGGRESSIVE, (0.6, 0.4, 0.6, 0.8)),
    ("Market Leadership", "Focus on building category leaders with exceptional exits",
     ApproachType.EXIT_FOCUSED, (0.4, 0.2, 0.3, 0.9)),
    ("Risk Mitigation Focus", "Prioritize loss reduction and steady progression",
     ApproachType.CONSERVATIVE, (0.4, 0.3, 0.7, 0.25)),
]

# Combinations whose listed families use a boosted intensity: min(1.2, intensity * boost)
BOOSTED_COMBINATIONS = {
    "High-Growth Aggressive": (1.5, (0, 1, 2, 3)),
    "Market Leadership": (1.3, (3,)),
}

FALLBACK_COMBINATIONS = [
    ("Minimal Exit Focus", "Smallest possible adjustments with emphasis on exit valuations",
     ApproachType.CONSERVATIVE, (0.1, 0.1, 0.1, 0.8)),
    ("Pure Exit Strategy", "Maximum focus on exit valuations only",
     ApproachType.EXIT_FOCUSED, (0.05, 0.05, 0.05, 1.0)),
    ("Aggressive All-In", "Maximum adjustments across all parameters",
     ApproachType.AGGRESSIVE, (0.8, 0.7, 0.8, 1.0)),
    ("Success-Only Focus", "Maximum success rate improvements with minimal exit changes",
     ApproachType.SUCCESS_FOCUSED, (0.7, 0.5, 0.8, 0.2)),
    ("Linear Scaling", "Proportional increases across all parameters",
     ApproachType.BALANCED, (0.5, 0.5, 0.5, 0.5)),
]

_FAMILY_ORDER = [
    ParameterFamily.STAGE_PROGRESSION,
    ParameterFamily.DILUTION,
    ParameterFamily.LOSS_PROBABILITY,
    ParameterFamily.EXIT_VALUATION,
]


# --------------------------------------------------------------------------
# --- Adjustments and Bounds ---
# --------------------------------------------------------------------------

def clamp_adjustments(adjustments: ParameterAdjustments, options: SensitivityOptions) -> ParameterAdjustments:
    """Clamps every family's percentage to [0, family limit]."""
    return ParameterAdjustments(*[
        min(options.family_limit(family), max(0.0, adjustments.for_family(family))) for family in _FAMILY_ORDER
    ])


def apply_parameter_adjustments(
    investments: Sequence[Investment],
    adjustments: ParameterAdjustments,
    options: Optional[SensitivityOptions] = None
) -> List[Investment]:
    """
    Returns adjusted copies of the investments; the inputs are left untouched.

    Stage progression and exit valuations are scaled up by their percentage,
    dilution and loss probabilities scaled down. Each adjusted value is held
    to its family's floor or ceiling.
    """
    options = options or SensitivityOptions()
    adjustments = clamp_adjustments(adjustments, options)

    adjusted = []
    for investment in investments:
        for family in _FAMILY_ORDER:
            investment = family.apply(investment, adjustments.for_family(family), options.loss_probability_floor)
        adjusted.append(investment)
    return adjusted


def check_parameter_bounds(
    investments: Sequence[Investment],
    adjustments: ParameterAdjustments,
    options: Optional[SensitivityOptions] = None
) -> List[str]:
    """Human-readable list of the bounds an (unclamped) adjustment would break."""
    options = options or SensitivityOptions()
    violations = []

    progression = adjustments.stage_progression_increase
    if progression > 0:
        peak = max((p * (1 + progression / 100) for inv in investments for p in inv.stage_progression.values()),
                   default=0.0)
        if peak > 100:
            violations.append(f"Stage progression would exceed 100% (max: {peak:.1f}%)")

    if adjustments.dilution_decrease > 100:
        violations.append(f"Dilution rates would fall below 0% (requires -{adjustments.dilution_decrease:.1f}%)")

    loss = adjustments.loss_probability_decrease
    if loss > 0:
        if loss > 100:
            violations.append(f"Loss probabilities would fall below 0% (requires -{loss:.1f}%)")
        elif options.loss_probability_floor > 0:
            lowest = min((p * (1 - loss / 100) for inv in investments for p in inv.loss_probabilities.values()
                          if p > options.loss_probability_floor), default=None)
            if lowest is not None and lowest < options.loss_probability_floor:
                violations.append(f"Loss probabilities would fall below the {options.loss_probability_floor:.1f}% floor "
                                  f"(min: {lowest:.1f}%)")

    for family in _FAMILY_ORDER:
        if not family.is_decrease and adjustments.for_family(family) > options.family_limit(family):
            violations.append(f"{family.label} would require +{adjustments.for_family(family):.1f}% "
                              f"(limit: {options.family_limit(family):.0f}%)")
    return violations


# --------------------------------------------------------------------------
# --- Memoised Re-simulation ---
# --------------------------------------------------------------------------

class _SimulationCache:
    """Runs (and remembers) the Monte Carlo result for each clamped adjustment."""

    def __init__(self, investments: Sequence[Investment], config: SimulationConfiguration,
                 options: SensitivityOptions, cancel_event: Optional[threading.Event] = None):
        self.investments = list(investments)
        self.config = config if options.num_trials is None else replace(config, num_trials=options.num_trials)
        self.options = options
        self.cancel_event = cancel_event
        self._results: Dict[ParameterAdjustments, FundMetrics] = {}

    def metrics(self, adjustments: ParameterAdjustments) -> FundMetrics:
        key = clamp_adjustments(adjustments, self.options)
        if key not in self._results:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise SimulationCancelled("Sensitivity analysis cancelled")
            self._results[key] = vcm.run_monte_carlo(
                apply_parameter_adjustments(self.investments, key, self.options),
                self.config,
                seed=self.options.seed,
                n_workers=self.options.n_workers,
                cancel_event=self.cancel_event,
            )
            logging.debug(f"Probe {key}: avg MOIC {self._results[key].avg_moic:.3f}x")
        return self._results[key]

    def single(self, family: ParameterFamily, percent: float) -> FundMetrics:
        return self.metrics(ParameterAdjustments.single(family, percent))

    def probes(self, family: ParameterFamily) -> List[Tuple[float, float]]:
        """(adjustment, avg MOIC) pairs already simulated for `family` alone."""
        points = []
        for key, metrics in self._results.items():
            if key.families_adjusted == 0 or (key.families_adjusted == 1 and key.for_family(family) > 0):
                points.append((key.for_family(family), metrics.avg_moic))
        return sorted(points)


def _adjustment_grid(limit: float, step: float) -> List[float]:
    count = int(math.ceil(limit / step - 1e-9))
    return [min(limit, i * step) for i in range(count + 1)]


def _extrapolate_requirement(cache: _SimulationCache, family: ParameterFamily, target_moic: float) -> float:
    """Linear fit of MOIC against the adjustment, solved for the target. +inf if MOIC does not respond."""
    limit = cache.options.family_limit(family)
    for percent in (0.0, limit / 2, limit):
        cache.single(family, percent)

    x, y = zip(*cache.probes(family))
    if len(set(x)) < 2:
        return math.inf
    fit = stats.linregress(x, y)
    if not (np.isfinite(fit.slope) and fit.slope > 0):
        return math.inf
    return max(limit, (target_moic - fit.intercept) / fit.slope)


def _not_achievable(cache: _SimulationCache, family: ParameterFamily, target_moic: float) -> SingleParameterResult:
    options = cache.options
    limit = options.family_limit(family)
    requirement = _extrapolate_requirement(cache, family, target_moic)

    if math.isinf(requirement):
        violations = [f"{family.label} has no measurable effect on MOIC; "
                      f"target {target_moic:.2f}x cannot be reached by this parameter alone"]
    else:
        violations = check_parameter_bounds(cache.investments, ParameterAdjustments.single(family, requirement), options)
        if not violations:
            sign = "-" if family.is_decrease else "+"
            if requirement > limit:
                violations = [f"{family.label} would need {sign}{requirement:.1f}% (allowed: {sign}{limit:.0f}%)"]
            else:
                violations = [f"{family.label}: target {target_moic:.2f}x is not reached within the "
                              f"{sign}{limit:.0f}% limit"]

    logging.info(f"  {family.label}: not achievable within {limit:.0f}% (requirement ~{requirement:.1f}%)")
    return SingleParameterResult(
        family=family,
        adjustment_percent=limit,
        achievable=False,
        metrics=cache.single(family, limit),
        actual_requirement=requirement,
        bound_violations=tuple(violations),
    )


def _search_family(
    cache: _SimulationCache,
    family: ParameterFamily,
    target_moic: float,
    start_at: float = 0.0
) -> SingleParameterResult:
    options = cache.options
    limit = options.family_limit(family)
    grid = [value for value in _adjustment_grid(limit, options.step_size) if value >= start_at - 1e-9] or [limit]

    # Check the limit first; if even that misses, no grid point can hit
    if cache.single(family, grid[-1]).avg_moic < target_moic:
        return _not_achievable(cache, family, target_moic)

    lo, hi = 0, len(grid) - 1
    while lo < hi:
        mid = (lo + hi) // 2
        if cache.single(family, grid[mid]).avg_moic >= target_moic:
            hi = mid
        else:
            lo = mid + 1

    logging.info(f"  {family.label}: {grid[lo]:.1f}% reaches {target_moic:.2f}x")
    return SingleParameterResult(
        family=family,
        adjustment_percent=grid[lo],
        achievable=True,
        metrics=cache.single(family, grid[lo]),
        actual_requirement=grid[lo],
    )


def find_single_parameter_adjustments(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    target_moic: float,
    options: Optional[SensitivityOptions] = None,
    families: Optional[Sequence[ParameterFamily]] = None,
    start_at: Optional[Dict[ParameterFamily, float]] = None,
    cancel_event: Optional[threading.Event] = None,
    _cache: Optional[_SimulationCache] = None,
    _on_family_done: Optional[Callable[[ParameterFamily], None]] = None
) -> Tuple[SingleParameterResult, ...]:
    """
    Smallest adjustment of each family, on its own, that lifts avg MOIC to the target.

    Args:
        investments: Baseline portfolio
        config: Simulation settings (num_trials may be overridden by options)
        target_moic: Multiple to reach
        options: Search settings (limits, step, seed)
        families: Families to search; defaults to all four
        start_at: Per-family lower bound for the search, e.g. the requirement for a lower target
        cancel_event: Checked before each re-simulation

    Returns:
        One SingleParameterResult per searched family
    """
    options = options or SensitivityOptions()
    cache = _cache or _SimulationCache(investments, config, options, cancel_event)
    start_at = start_at or {}

    results = []
    for family in (families if families is not None else _FAMILY_ORDER):
        results.append(_search_family(cache, family, target_moic, start_at.get(family, 0.0)))
        if _on_family_done is not None:
            _on_family_done(family)
    return tuple(results)


# --------------------------------------------------------------------------
# --- Mixed-Parameter Recipes ---
# --------------------------------------------------------------------------

def _build_combinations(
    table, intensity: float, max_adjustment: float, options: SensitivityOptions, boosted=None
) -> List[Tuple[str, str, ApproachType, ParameterAdjustments]]:
    boosted = boosted or {}
    combinations = []
    for name, description, approach, weights in table:
        scales = [intensity] * 4
        if name in boosted:
            boost, indices = boosted[name]
            for i in indices:
                scales[i] = min(1.2, intensity * boost)
        raw = ParameterAdjustments(*[max_adjustment * w * s for w, s in zip(weights, scales)])
        combinations.append((name, description, approach, clamp_adjustments(raw, options)))
    return combinations


def _evaluate_combinations(cache, combinations, target_moic) -> List[MixedParameterOption]:
    successes = []
    for name, description, approach, adjustments in combinations:
        metrics = cache.metrics(adjustments)
        if metrics.avg_moic >= target_moic:
            successes.append(MixedParameterOption(
                name=name,
                description=description,
                approach_type=approach,
                adjustments=adjustments,
                metrics=metrics,
                total_adjustment=adjustments.total,
            ))
    return successes


def find_mixed_parameter_options(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    target_moic: float,
    options: Optional[SensitivityOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    _cache: Optional[_SimulationCache] = None
) -> Tuple[MixedParameterOption, ...]:
    """
    Re-simulates the strategic combinations (and, if too few succeed, the fallbacks)
    and keeps those reaching the target, least total change first.
    """
    options = options or SensitivityOptions()
    cache = _cache or _SimulationCache(investments, config, options, cancel_event)
    max_adjustment = options.max_adjustment_percent

    base_intensity = min(1.0, max(0.4, (target_moic - 2) / 4))
    successes = _evaluate_combinations(
        cache, _build_combinations(STRATEGIC_COMBINATIONS, base_intensity, max_adjustment, options, BOOSTED_COMBINATIONS),
        target_moic,
    )

    if len(successes) < options.min_mixed_options:
        high_intensity = min(1.5, max(0.8, (target_moic - 2) / 3))
        logging.info(f"  Only {len(successes)} strategic combinations reach {target_moic:.2f}x; trying fallbacks")
        successes += _evaluate_combinations(
            cache, _build_combinations(FALLBACK_COMBINATIONS, high_intensity, max_adjustment, options), target_moic,
        )

    successes.sort(key=lambda option: option.total_adjustment)
    return tuple(successes[:options.max_mixed_options])


# --------------------------------------------------------------------------
# --- Achievability ---
# --------------------------------------------------------------------------

def _realism_score(largest_adjustment: float) -> float:
    if largest_adjustment <= 15:
        return 100.0
    if largest_adjustment <= 30:
        return 80.0
    if largest_adjustment <= 50:
        return 50.0
    return 20.0


def _score_explanation(score: float) -> str:
    if score >= 80:
        return "Highly achievable with normal market conditions"
    if score >= 60:
        return "Achievable with favorable market conditions"
    if score >= 40:
        return "Requires optimistic market assumptions"
    return "Requires exceptional market performance"


def calculate_achievability_score(
    baseline_moic: float,
    target_moic: float,
    single_options: Sequence[SingleParameterResult],
    primary: Optional[ParameterAdjustments],
    weights: Optional[Dict[str, float]] = None
) -> AchievabilityScore:
    """
    Weighted 0-100 composite of how plausible a target is.

    Factors: how close the baseline already is, the smallest achievable
    single-family change, the total size of the primary recipe and how far
    its largest change strays from typical market variation.
    """
    weights = weights or ACHIEVABILITY_WEIGHTS

    if target_moic <= baseline_moic:
        factors = tuple(AchievabilityFactor(name, 100.0, weight, "Baseline already meets the target")
                        for name, weight in weights.items())
        return AchievabilityScore(100.0, _score_explanation(100.0), factors)

    proximity = max(0.0, min(100.0, 100 * baseline_moic / target_moic))
    achievable = [opt.adjustment_percent for opt in single_options if opt.achievable]
    smallest = min(achievable) if achievable else None

    scores = {
        "Baseline Proximity": (
            proximity,
            f"Baseline {baseline_moic:.2f}x is {proximity:.0f}% of the {target_moic:.2f}x target",
        ),
        "Smallest Single Adjustment": (
            max(0.0, 100 - 2 * smallest) if smallest is not None else 0.0,
            f"Smallest single-parameter change is {smallest:.1f}%" if smallest is not None
            else "No single parameter reaches the target within its bounds",
        ),
        "Adjustment Magnitude": (
            max(0.0, 100 - 2 * primary.total) if primary is not None else 0.0,
            f"Primary recipe changes parameters by {primary.total:.1f}% in total" if primary is not None
            else "No recipe reaches the target",
        ),
        "Market Realism": (
            _realism_score(primary.largest) if primary is not None else 0.0,
            f"Largest single change in the primary recipe is {primary.largest:.1f}%" if primary is not None
            else "No recipe reaches the target",
        ),
    }

    factors = tuple(
        AchievabilityFactor(name, scores[name][0], weight, scores[name][1])
        for name, weight in weights.items() if name in scores
    )
    total_weight = sum(f.weight for f in factors)
    score = sum(f.score * f.weight for f in factors) / total_weight if total_weight > 0 else 0.0
    score = round(max(0.0, min(100.0, score)), 1)
    return AchievabilityScore(score, _score_explanation(score), factors)


# --------------------------------------------------------------------------
# --- Orchestration ---
# --------------------------------------------------------------------------

def default_target_moics(baseline_moic: float) -> List[float]:
    """Whole multiples above the baseline, up to min(10, baseline + 6)."""
    upper = min(10.0, baseline_moic + 6)
    targets = [float(t) for t in range(int(math.floor(baseline_moic)) + 1, int(math.floor(upper)) + 1)]
    if not targets and baseline_moic < 8:
        targets = [float(math.ceil(baseline_moic + 0.5))]
    return targets


def _baseline_scenario(target_moic: float, baseline: FundMetrics, options: SensitivityOptions,
                       families: Sequence[ParameterFamily]) -> TargetScenario:
    singles = tuple(SingleParameterResult(family=f, adjustment_percent=0.0, achievable=True,
                                          metrics=baseline, actual_requirement=0.0) for f in families)
    return TargetScenario(
        target_moic=target_moic,
        single_parameter_options=singles,
        mixed_parameter_options=(),
        required_adjustments=ParameterAdjustments(),
        adjusted_metrics=baseline,
        achievability=calculate_achievability_score(baseline.avg_moic, target_moic, singles,
                                                    ParameterAdjustments(), options.achievability_weights),
        is_realistic=True,
    )


def run_sensitivity_analysis(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    target_moics: Optional[Sequence[float]] = None,
    options: Optional[SensitivityOptions] = None,
    baseline_metrics: Optional[FundMetrics] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None
) -> SensitivityReport:
    """
    Runs the full inverse search for a list of target multiples.

    Targets are de-duplicated and processed in ascending order. A family's
    search for a higher target starts at the requirement found for the lower
    one, and a decrease family already at -100% is dropped from higher
    targets.

    Args:
        investments: Baseline portfolio
        config: Simulation settings
        target_moics: Targets to solve for; defaults to whole multiples above the baseline
        options: Search settings
        baseline_metrics: Pre-computed baseline; simulated with the search seed if omitted
        progress_callback: Called as (percent, step) after every family search,
            every mixed search and at completion
        cancel_event: When set, SimulationCancelled is raised at the next step

    Returns:
        SensitivityReport with one TargetScenario per target
    """
    options = options or SensitivityOptions()
    validate_inputs(list(investments), config)
    validate_sensitivity_options(options)
    if target_moics is not None and any(not (t > 0 and math.isfinite(t)) for t in target_moics):
        raise ValueError(f"Invalid configuration: target multiples must be positive, got {list(target_moics)}")

    cache = _SimulationCache(investments, config, options, cancel_event)
    baseline = baseline_metrics if baseline_metrics is not None else cache.metrics(ParameterAdjustments())
    baseline_moic = baseline.avg_moic
    targets = sorted(set(float(t) for t in target_moics)) if target_moics is not None \
        else default_target_moics(baseline_moic)

    logging.info(f"--- Running Sensitivity Analysis: baseline {baseline_moic:.2f}x, targets {targets} ---")

    total_steps = max(1, len(targets) * (len(_FAMILY_ORDER) + 1))
    done_steps = 0

    def report(step: str) -> None:
        nonlocal done_steps
        done_steps += 1
        percent = min(100.0, 100.0 * done_steps / total_steps)
        logging.info(f"Sensitivity progress {percent:.0f}%: {step}")
        if progress_callback is not None:
            progress_callback(percent, step)

    scenarios = []
    previous: Dict[ParameterFamily, SingleParameterResult] = {}
    suppressed: List[ParameterFamily] = []

    for target in targets:
        if cancel_event is not None and cancel_event.is_set():
            raise SimulationCancelled("Sensitivity analysis cancelled")

        families = [f for f in _FAMILY_ORDER if f not in suppressed]
        if target <= baseline_moic:
            scenarios.append(_baseline_scenario(target, baseline, options, families))
            for family in families:
                report(f"{target:.2f}x: {family.label}")
            report(f"{target:.2f}x: mixed options")
            continue

        logging.info(f"--- Target {target:.2f}x ---")
        start_at = {f: result.adjustment_percent for f, result in previous.items()}
        singles = find_single_parameter_adjustments(
            investments, config, target, options, families=families, start_at=start_at,
            cancel_event=cancel_event, _cache=cache,
            _on_family_done=lambda family, t=target: report(f"{t:.2f}x: {family.label}"),
        )
        mixed = find_mixed_parameter_options(investments, config, target, options, cancel_event, _cache=cache)
        report(f"{target:.2f}x: mixed options")

        achievable = [opt for opt in singles if opt.achievable]
        smallest = min(achievable, key=lambda opt: opt.adjustment_percent) if achievable else None
        if mixed:
            primary, adjusted_metrics = mixed[0].adjustments, mixed[0].metrics
        elif smallest is not None:
            primary, adjusted_metrics = ParameterAdjustments.single(smallest.family, smallest.adjustment_percent), smallest.metrics
        else:
            primary, adjusted_metrics = None, None

        scenarios.append(TargetScenario(
            target_moic=target,
            single_parameter_options=singles,
            mixed_parameter_options=mixed,
            required_adjustments=primary,
            adjusted_metrics=adjusted_metrics,
            achievability=calculate_achievability_score(baseline_moic, target, singles, primary,
                                                        options.achievability_weights),
            is_realistic=smallest is not None and smallest.adjustment_percent <= options.realistic_threshold,
            suppressed_families=tuple(suppressed),
        ))

        for result in singles:
            previous[result.family] = result
            if result.family.is_decrease and (result.is_maxed_out or not result.achievable):
                suppressed.append(result.family)
                logging.info(f"  {result.family.label} is at its -100% floor; omitted from higher targets")

    sensitivity_report = SensitivityReport(
        baseline_metrics=baseline,
        baseline_moic=baseline_moic,
        target_moics=tuple(targets),
        target_scenarios=tuple(scenarios),
    )
    if progress_callback is not None:
        progress_callback(100.0, "complete")
    logging.info(f"Sensitivity analysis complete: {len(scenarios)} target scenarios")
    return sensitivity_report
