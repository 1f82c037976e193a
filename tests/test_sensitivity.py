# ------------------------------------------------------------------------------
# --- File: tests/test_sensitivity.py ---
# ------------------------------------------------------------------------------

import math
import threading
import pytest

from conftest import make_investment
from parameters import (
    ParameterAdjustments, ParameterFamily, SensitivityOptions, SimulationConfiguration, Stage,
)
import sensitivity
from engine import SimulationCancelled, run_monte_carlo
from sensitivity import (
    apply_parameter_adjustments, calculate_achievability_score, check_parameter_bounds,
    default_target_moics, find_mixed_parameter_options, find_single_parameter_adjustments,
    run_sensitivity_analysis,
)


@pytest.fixture
def fast_config():
    return SimulationConfiguration(num_trials=20)


@pytest.fixture
def fast_options():
    return SensitivityOptions(num_trials=20)


@pytest.fixture
def ipo_portfolio():
    """Always reaches IPO at $100MM after five 20% dilutions: 0.1 * 0.8^5 * 100 = 3.2768x."""
    return [make_investment(entry_stage=Stage.PRE_SEED, progression=100.0, dilution=20.0,
                            exit_range=(100.0, 100.0))]


# --- Adjustments and bounds ---

def test_apply_adjustments_scales_each_family_within_bounds():
    investment = make_investment(
        stage_progression={Stage.SERIES_A: 60.0, Stage.SERIES_B: 80.0},
        dilution_rates={Stage.SERIES_A: 20.0},
        loss_probabilities={Stage.SEED: 8.0, Stage.SERIES_A: 3.0},
        exit_valuations={Stage.SEED: (10.0, 20.0)},
    )
    adjustments = ParameterAdjustments(stage_progression_increase=50.0, dilution_decrease=50.0,
                                       loss_probability_decrease=50.0, exit_valuation_increase=10.0)
    options = SensitivityOptions(loss_probability_floor=5.0)

    [adjusted] = apply_parameter_adjustments([investment], adjustments, options)

    assert adjusted.stage_progression == {Stage.SERIES_A: pytest.approx(90.0), Stage.SERIES_B: 100.0}
    assert adjusted.dilution_rates[Stage.SERIES_A] == pytest.approx(10.0)
    # Floored at 5%; stages already below the floor are left alone
    assert adjusted.loss_probabilities == {Stage.SEED: 5.0, Stage.SERIES_A: 3.0}
    assert adjusted.exit_valuations[Stage.SEED] == (pytest.approx(11.0), pytest.approx(22.0))
    # The input is never mutated
    assert investment.stage_progression[Stage.SERIES_A] == 60.0

def test_apply_adjustments_clamps_to_family_limits():
    investment = make_investment(exit_range=(10.0, 10.0), dilution=20.0)
    over = apply_parameter_adjustments([investment], ParameterAdjustments(exit_valuation_increase=80.0,
                                                                          dilution_decrease=150.0))[0]
    assert over.exit_valuations[Stage.SEED] == (pytest.approx(15.0), pytest.approx(15.0))
    assert over.dilution_rates[Stage.SERIES_A] == 0.0

def test_check_parameter_bounds_messages():
    investment = make_investment(progression=80.0, dilution=20.0, loss=10.0)
    violations = check_parameter_bounds(
        [investment],
        ParameterAdjustments(stage_progression_increase=40.0, dilution_decrease=120.0, exit_valuation_increase=70.0),
    )
    assert any("Stage progression would exceed 100% (max: 112.0%)" in v for v in violations)
    assert any("Dilution rates would fall below 0%" in v for v in violations)
    assert any("Exit valuations would require +70.0%" in v for v in violations)
    assert check_parameter_bounds([investment], ParameterAdjustments(exit_valuation_increase=20.0)) == []


# --- Single-parameter search ---

def test_exit_valuation_requirement_is_exact(deterministic_investment, fast_config, fast_options):
    """
    A 5.0x baseline needs +24% exit value for 6.2x; the first grid point at or above is 25%.
    """
    results = find_single_parameter_adjustments([deterministic_investment], fast_config, 6.2, fast_options)
    by_family = {r.family: r for r in results}

    exit_result = by_family[ParameterFamily.EXIT_VALUATION]
    assert exit_result.achievable
    assert exit_result.adjustment_percent == 25.0
    assert exit_result.metrics.avg_moic == pytest.approx(6.25)

def test_insensitive_family_has_infinite_requirement(deterministic_investment, fast_config, fast_options):
    results = find_single_parameter_adjustments([deterministic_investment], fast_config, 6.2, fast_options,
                                                families=[ParameterFamily.STAGE_PROGRESSION])
    [progression] = results
    assert not progression.achievable
    assert progression.adjustment_percent == 50.0
    assert math.isinf(progression.actual_requirement)
    assert progression.bound_violations

def test_impossible_dilution_reduction_is_reported(ipo_portfolio, fast_config, fast_options):
    """
    Removing all dilution only reaches 10x, so 12x would need dilution below -100%.
    """
    [dilution] = find_single_parameter_adjustments(ipo_portfolio, fast_config, 12.0, fast_options,
                                                   families=[ParameterFamily.DILUTION])
    assert not dilution.achievable
    assert dilution.adjustment_percent == 100.0
    assert dilution.metrics.avg_moic == pytest.approx(10.0)
    assert dilution.actual_requirement > 100.0
    assert any("below 0%" in v for v in dilution.bound_violations)

def test_requirement_at_the_limit_is_worded_as_out_of_reach(deterministic_investment, fast_config, fast_options,
                                                             monkeypatch):
    monkeypatch.setattr(sensitivity, "_extrapolate_requirement",
                        lambda cache, family, target: cache.options.family_limit(family))
    [dilution] = find_single_parameter_adjustments([deterministic_investment], fast_config, 6.2, fast_options,
                                                   families=[ParameterFamily.DILUTION])
    assert not dilution.achievable
    assert dilution.bound_violations == ("Dilution rates: target 6.20x is not reached within the -100% limit",)

def test_single_parameter_search_is_idempotent(risky_portfolio, fast_config, fast_options):
    baseline = run_monte_carlo(risky_portfolio, fast_config, seed=fast_options.seed)
    target = baseline.avg_moic * 1.2
    first = find_single_parameter_adjustments(risky_portfolio, fast_config, target, fast_options)
    second = find_single_parameter_adjustments(risky_portfolio, fast_config, target, fast_options)
    assert [(r.adjustment_percent, r.achievable) for r in first] == \
           [(r.adjustment_percent, r.achievable) for r in second]


# --- Mixed-parameter options ---

def test_mixed_options_meet_target_and_are_ranked(deterministic_investment, fast_config, fast_options):
    options = find_mixed_parameter_options([deterministic_investment], fast_config, 5.5, fast_options)

    assert 0 < len(options) <= fast_options.max_mixed_options
    totals = [o.total_adjustment for o in options]
    assert totals == sorted(totals)
    for option in options:
        assert option.metrics.avg_moic >= 5.5
        assert option.total_adjustment == pytest.approx(option.adjustments.total)
        assert option.adjustments.exit_valuation_increase <= fast_options.max_adjustment_percent

def test_fallbacks_are_used_when_strategies_fall_short(ipo_portfolio, fast_config, fast_options):
    """
    At 8x no strategic mix removes enough dilution. Of the fallbacks only
    Aggressive All-In (-52.5% dilution, +50% exits: ~9.1x) gets there.
    """
    options = find_mixed_parameter_options(ipo_portfolio, fast_config, 8.0, fast_options)
    assert [o.name for o in options] == ["Aggressive All-In"]
    assert options[0].adjustments.dilution_decrease == pytest.approx(52.5)
    assert options[0].metrics.avg_moic == pytest.approx(15 * 0.905 ** 5)


# --- Achievability ---

def test_score_is_100_when_baseline_meets_target():
    score = calculate_achievability_score(3.0, 3.0, [], None)
    assert score.score == 100.0
    assert score.explanation == "Highly achievable with normal market conditions"

def test_score_without_any_recipe_uses_proximity_only():
    score = calculate_achievability_score(2.0, 4.0, [], None)
    # 50 proximity x 0.3 weight
    assert score.score == pytest.approx(15.0)
    assert score.explanation == "Requires exceptional market performance"
    assert [f.name for f in score.factors] == ["Baseline Proximity", "Smallest Single Adjustment",
                                              "Adjustment Magnitude", "Market Realism"]

def test_score_weights_are_configurable():
    score = calculate_achievability_score(2.0, 4.0, [], None, weights={"Baseline Proximity": 1.0})
    assert score.score == pytest.approx(50.0)

@pytest.mark.parametrize("baseline, expected", [
    (2.3, [3.0, 4.0, 5.0, 6.0, 7.0, 8.0]),
    (7.5, [8.0, 9.0, 10.0]),
    (9.5, [10.0]),
    (10.2, []),
])
def test_default_target_moics(baseline, expected):
    assert default_target_moics(baseline) == expected


# --- Full analysis ---

def test_target_at_baseline_needs_no_adjustment(risky_portfolio, fast_config, fast_options):
    baseline = run_monte_carlo(risky_portfolio, fast_config, seed=fast_options.seed)
    report = run_sensitivity_analysis(risky_portfolio, fast_config, [baseline.avg_moic], fast_options,
                                      baseline_metrics=baseline)
    [scenario] = report.target_scenarios
    assert scenario.achievability_score == 100.0
    assert scenario.is_realistic
    assert scenario.label == "Realistic"
    assert len(scenario.single_parameter_options) == 4
    assert all(o.adjustment_percent == 0.0 and o.achievable for o in scenario.single_parameter_options)
    assert scenario.required_adjustments == ParameterAdjustments()

def test_targets_are_sorted_deduplicated_and_monotone(deterministic_investment, fast_config, fast_options):
    report = run_sensitivity_analysis([deterministic_investment], fast_config, [6.9, 5.4, 6.2, 5.4], fast_options)

    assert report.baseline_moic == pytest.approx(5.0)
    assert report.target_moics == (5.4, 6.2, 6.9)
    exit_steps = [s.option_for(ParameterFamily.EXIT_VALUATION).adjustment_percent for s in report.target_scenarios]
    assert exit_steps == [10.0, 25.0, 40.0]

    first = report.target_scenarios[0]
    assert first.is_realistic
    assert first.required_adjustments is not None
    assert first.adjusted_metrics.avg_moic >= 5.4

def test_exhausted_decrease_families_are_suppressed(deterministic_investment, fast_config, fast_options):
    report = run_sensitivity_analysis([deterministic_investment], fast_config, [5.4, 6.2], fast_options)
    low, high = report.target_scenarios

    assert low.suppressed_families == ()
    assert set(high.suppressed_families) == {ParameterFamily.DILUTION, ParameterFamily.LOSS_PROBABILITY}
    assert high.option_for(ParameterFamily.DILUTION) is None
    assert high.option_for(ParameterFamily.EXIT_VALUATION) is not None

def test_progress_callback_reports_until_complete(deterministic_investment, fast_config, fast_options):
    calls = []
    run_sensitivity_analysis([deterministic_investment], fast_config, [5.5, 6.0], fast_options,
                             progress_callback=lambda percent, step: calls.append((percent, step)))
    percents = [p for p, _ in calls]
    assert percents == sorted(percents)
    assert calls[-1] == (100.0, "complete")
    assert any("mixed options" in step for _, step in calls)

def test_cancelled_analysis_raises(deterministic_investment, fast_config, fast_options):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(SimulationCancelled):
        run_sensitivity_analysis([deterministic_investment], fast_config, [6.0], fast_options, cancel_event=cancel)

def test_invalid_search_settings_are_rejected(deterministic_investment, fast_config):
    with pytest.raises(ValueError):
        run_sensitivity_analysis([deterministic_investment], fast_config, [6.0], SensitivityOptions(step_size=0))
    with pytest.raises(ValueError):
        run_sensitivity_analysis([deterministic_investment], fast_config, [-1.0])
