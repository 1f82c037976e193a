# ==============================================================================
# --- VC Portfolio Model: Scenario Forecasts (v1.0) ---
# ==============================================================================
#
# Re-simulates the portfolio under macroeconomic and sector scenarios and
# combines the results into probability-weighted expectations.
#
# A scenario rescales each investment's assumptions: the macro backdrop moves
# exit valuations, progression and loss probabilities for every company, and
# the trend for a company's field moves them again. Every scenario is run with
# the same seed as the baseline, so differences come from the assumptions only.
#
# ==============================================================================
import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

import engine as vcm
from engine import ProgressCallback, SimulationCancelled
from parameters import (
    ForecastReport, ForecastScenario, FundMetrics, Investment, MacroeconomicFactors,
    ScenarioForecast, SectorTrend, SimulationConfiguration, validate_inputs,
)

# Scenario-adjusted probabilities never exceed these caps (%)
MAX_FORECAST_PROGRESSION = 95.0
MAX_FORECAST_LOSS = 90.0

# Rates and growth at which the macro and sector adjustments are neutral (%)
NEUTRAL_INTEREST_RATE = 2.5
NEUTRAL_SECTOR_CAGR = 10.0

_LIQUIDITY_MULTIPLIER = {"abundant": 1.2, "moderate": 1.0, "constrained": 0.7}
_SENTIMENT_MULTIPLIER = {"bullish": 1.15, "neutral": 1.0, "bearish": 0.85}
_CYCLE_RISK_MULTIPLIER = {"expansion": 0.8, "peak": 1.0, "contraction": 1.4, "trough": 1.2}
_GROWTH_MULTIPLIER = {"accelerating": 1.25, "stable": 1.0, "decelerating": 0.8}
_COMPETITION_MULTIPLIER = {"low": 1.1, "medium": 1.0, "high": 0.9}
_FUNDING_MULTIPLIER = {"abundant": 1.15, "moderate": 1.0, "limited": 0.85}
_RISK_LEVELS = ("low", "medium", "high")

DEFAULT_MACRO_SCENARIOS: Dict[str, MacroeconomicFactors] = {
    "expansion": MacroeconomicFactors(cycle="expansion", sentiment="bullish", interest_rates=2.5,
                                      inflation_rate=2.0, gdp_growth_rate=3.2, public_market_multiples=1.2,
                                      liquidity_environment="abundant"),
    "peak": MacroeconomicFactors(cycle="peak", sentiment="neutral", interest_rates=4.0,
                                 inflation_rate=3.5, gdp_growth_rate=2.1, public_market_multiples=1.0,
                                 liquidity_environment="moderate"),
    "contraction": MacroeconomicFactors(cycle="contraction", sentiment="bearish", interest_rates=1.5,
                                        inflation_rate=1.2, gdp_growth_rate=-0.8, public_market_multiples=0.7,
                                        liquidity_environment="constrained"),
}

DEFAULT_SECTOR_TRENDS: Dict[str, SectorTrend] = {
    "software": SectorTrend("software", "stable", "medium", "low", "high", "moderate", 8.5),
    "deeptech": SectorTrend("deeptech", "accelerating", "high", "medium", "medium", "moderate", 12.3),
    "biotech": SectorTrend("biotech", "accelerating", "high", "high", "medium", "limited", 15.7),
    "fintech": SectorTrend("fintech", "stable", "medium", "high", "high", "moderate", 10.2),
    "ecommerce": SectorTrend("ecommerce", "decelerating", "medium", "medium", "high", "limited", 6.8),
    "healthcare": SectorTrend("healthcare", "accelerating", "medium", "high", "medium", "moderate", 11.4),
    "energy": SectorTrend("energy", "accelerating", "high", "high", "medium", "abundant", 14.2),
    "foodtech": SectorTrend("foodtech", "stable", "medium", "medium", "medium", "moderate", 9.1),
}


def create_default_scenarios() -> List[ForecastScenario]:
    """Optimistic growth (25%), base case (50%) and downturn (25%) over the default sector trends."""
    trends = list(DEFAULT_SECTOR_TRENDS.values())
    return [
        ForecastScenario(
            scenario_id="optimistic",
            name="Optimistic Growth",
            description="Strong economic expansion with abundant capital and favorable conditions",
            probability=25.0,
            macro=DEFAULT_MACRO_SCENARIOS["expansion"],
            sector_trends=tuple(replace(t, growth_outlook="accelerating", funding_availability="abundant",
                                        expected_cagr=t.expected_cagr * 1.3) for t in trends),
        ),
        ForecastScenario(
            scenario_id="realistic",
            name="Base Case",
            description="Normal market conditions with moderate growth and standard assumptions",
            probability=50.0,
            macro=DEFAULT_MACRO_SCENARIOS["peak"],
            sector_trends=tuple(trends),
        ),
        ForecastScenario(
            scenario_id="pessimistic",
            name="Downturn Scenario",
            description="Economic contraction with limited funding and challenging conditions",
            probability=25.0,
            macro=DEFAULT_MACRO_SCENARIOS["contraction"],
            sector_trends=tuple(replace(t, growth_outlook="decelerating", funding_availability="limited",
                                        expected_cagr=t.expected_cagr * 0.6) for t in trends),
        ),
    ]


# --------------------------------------------------------------------------
# --- Scenario Transforms ---
# --------------------------------------------------------------------------

def _lookup(table: Dict[str, float], key: str, what: str) -> float:
    try:
        return table[key]
    except KeyError:
        raise ValueError(f"Invalid configuration: unknown {what} '{key}' (expected one of {sorted(table)})") from None


def _rescale(investment: Investment, exit_factor: float, progression_factor: float, loss_factor: float) -> Investment:
    return replace(
        investment,
        exit_valuations={stage: (low * exit_factor, high * exit_factor)
                         for stage, (low, high) in investment.exit_valuations.items()},
        stage_progression={stage: min(MAX_FORECAST_PROGRESSION, prob * progression_factor)
                           for stage, prob in investment.stage_progression.items()},
        loss_probabilities={stage: min(MAX_FORECAST_LOSS, prob * loss_factor)
                            for stage, prob in investment.loss_probabilities.items()},
    )


def apply_macro_adjustments(investment: Investment, macro: MacroeconomicFactors) -> Investment:
    """
    Rescales an investment for a macroeconomic backdrop.

    Exit valuations move with interest rates (10% per point away from 2.5%,
    floored at half), liquidity and public-market multiples. Progression moves
    with sentiment and loss probabilities with the economic cycle; both are
    capped at 95% and 90% respectively.
    """
    rate_multiplier = max(0.5, 1 - (macro.interest_rates - NEUTRAL_INTEREST_RATE) * 0.1)
    liquidity = _lookup(_LIQUIDITY_MULTIPLIER, macro.liquidity_environment, "liquidity environment")
    exit_factor = rate_multiplier * liquidity * macro.public_market_multiples
    return _rescale(
        investment,
        exit_factor=exit_factor,
        progression_factor=_lookup(_SENTIMENT_MULTIPLIER, macro.sentiment, "sentiment"),
        loss_factor=_lookup(_CYCLE_RISK_MULTIPLIER, macro.cycle, "economic cycle"),
    )


def apply_sector_adjustments(investment: Investment, trend: SectorTrend) -> Investment:
    """
    Rescales an investment for its field's outlook.

    Exit valuations move with the growth outlook and by 5% per point of CAGR
    away from 10%. Progression moves with competition and funding
    availability. High regulatory (x1.2) and disruption (x1.15) risk raise
    loss probabilities.
    """
    for name in ("disruption_risk", "regulatory_risk"):
        if getattr(trend, name) not in _RISK_LEVELS:
            raise ValueError(f"Invalid configuration: {trend.field} {name} must be one of {_RISK_LEVELS}")

    cagr_impact = max(0.0, 1 + (trend.expected_cagr - NEUTRAL_SECTOR_CAGR) * 0.05)
    exit_factor = _lookup(_GROWTH_MULTIPLIER, trend.growth_outlook, "growth outlook") * cagr_impact
    progression_factor = _lookup(_COMPETITION_MULTIPLIER, trend.competition_intensity, "competition intensity") \
        * _lookup(_FUNDING_MULTIPLIER, trend.funding_availability, "funding availability")
    loss_factor = (1.2 if trend.regulatory_risk == "high" else 1.0) * \
                  (1.15 if trend.disruption_risk == "high" else 1.0)
    return _rescale(investment, exit_factor, progression_factor, loss_factor)


def apply_forecast_scenario(investments: Sequence[Investment], scenario: ForecastScenario) -> List[Investment]:
    """Macro adjustments for every investment, then the sector trend matching its field, if any."""
    adjusted = []
    for investment in investments:
        result = apply_macro_adjustments(investment, scenario.macro)
        trend = scenario.trend_for(investment.field)
        if trend is not None:
            result = apply_sector_adjustments(result, trend)
        adjusted.append(result)
    return adjusted


def validate_scenarios(scenarios: Sequence[ForecastScenario]) -> None:
    if not scenarios:
        raise ValueError("Invalid configuration: at least one forecast scenario is required")
    ids = [s.scenario_id for s in scenarios]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Invalid configuration: duplicate forecast scenario ids in {ids}")
    if any(s.probability < 0 for s in scenarios):
        raise ValueError("Invalid configuration: scenario probabilities must not be negative")
    if sum(s.probability for s in scenarios) <= 0:
        raise ValueError("Invalid configuration: scenario probabilities must not all be zero")


# --------------------------------------------------------------------------
# --- Forecast Analysis ---
# --------------------------------------------------------------------------

def run_forecast_analysis(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    scenarios: Optional[Sequence[ForecastScenario]] = None,
    seed: int = 42,
    baseline_metrics: Optional[FundMetrics] = None,
    n_workers: int = 1,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None
) -> ForecastReport:
    """
    Simulates the portfolio under each scenario and weights the outcomes.

    Args:
        investments: Baseline portfolio
        config: Simulation settings shared by every scenario
        scenarios: Scenarios to run; defaults to create_default_scenarios()
        seed: Seed used for the baseline and for every scenario
        baseline_metrics: Pre-computed baseline; simulated with `seed` if omitted
        n_workers: Worker threads per Monte Carlo run
        progress_callback: Called as (percent, step) after each scenario
        cancel_event: When set, SimulationCancelled is raised at the next scenario

    Returns:
        ForecastReport with per-scenario metrics and probability-weighted
        expected MOIC, IRR and distributions
    """
    scenarios = list(scenarios) if scenarios is not None else create_default_scenarios()
    validate_inputs(list(investments), config)
    validate_scenarios(scenarios)

    baseline = baseline_metrics if baseline_metrics is not None else vcm.run_monte_carlo(
        investments, config, seed=seed, n_workers=n_workers, cancel_event=cancel_event)
    total_probability = sum(s.probability for s in scenarios)

    logging.info(f"--- Running Forecast Analysis: {len(scenarios)} scenarios, baseline {baseline.avg_moic:.2f}x ---")

    forecasts = []
    for index, scenario in enumerate(scenarios, start=1):
        if cancel_event is not None and cancel_event.is_set():
            raise SimulationCancelled("Forecast analysis cancelled")

        adjusted = apply_forecast_scenario(investments, scenario)
        metrics = vcm.run_monte_carlo(adjusted, config, seed=seed, n_workers=n_workers, cancel_event=cancel_event)
        weight = scenario.probability / total_probability
        forecasts.append(ScenarioForecast(scenario=scenario, weight=weight, metrics=metrics))
        logging.info(f"  {scenario.name} ({weight:.0%}): avg MOIC {metrics.avg_moic:.2f}x, "
                     f"avg IRR {metrics.avg_irr:.1%}")

        if progress_callback is not None:
            progress_callback(100.0 * index / len(scenarios), f"scenario {scenario.name}")

    report = ForecastReport(
        baseline_metrics=baseline,
        forecasts=tuple(forecasts),
        expected_moic=sum(f.weight * f.metrics.avg_moic for f in forecasts),
        expected_irr=sum(f.weight * f.metrics.avg_irr for f in forecasts),
        probability_weighted_value=sum(f.weight * f.metrics.avg_distributed for f in forecasts),
    )
    logging.info(f"Forecast analysis complete: expected MOIC {report.expected_moic:.2f}x")
    return report
