# ------------------------------------------------------------------------------
# --- File: tests/test_analysis_utils.py ---
# ------------------------------------------------------------------------------

import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pytest

from parameters import ParameterFamily, SensitivityOptions, SimulationConfiguration
from engine import run_monte_carlo
from forecast import run_forecast_analysis
from sensitivity import run_sensitivity_analysis
from analysis_utils import (
    display_sensitivity_report, forecast_summary_frame, investment_outcomes_frame, moic_distribution, plot_moic_distribution,
    plot_required_adjustments, scenario_summary_frame, single_parameter_frame, trials_to_frame,
)


@pytest.fixture
def retained_metrics(risky_portfolio):
    return run_monte_carlo(risky_portfolio, SimulationConfiguration(num_trials=40), seed=9, retain_trials=True)


@pytest.fixture
def small_report(deterministic_investment):
    return run_sensitivity_analysis([deterministic_investment], SimulationConfiguration(num_trials=10),
                                    [4.0, 5.4, 6.2], SensitivityOptions(num_trials=10))


def test_trials_to_frame(retained_metrics):
    df = trials_to_frame(retained_metrics)
    assert len(df) == 40
    assert {"Paid_In", "Distributed", "MOIC", "IRR"} <= set(df.columns)
    assert df["Distributed"].mean() == pytest.approx(retained_metrics.avg_distributed)

def test_investment_outcomes_frame(retained_metrics, risky_portfolio):
    df = investment_outcomes_frame(retained_metrics)
    assert len(df) == 40 * len(risky_portfolio)
    assert set(df["Investment_ID"]) == {inv.investment_id for inv in risky_portfolio}
    assert (df.loc[df["Is_Loss"], "Exit_Amount"] == 0).all()

def test_frames_require_retained_trials(risky_portfolio):
    metrics = run_monte_carlo(risky_portfolio, SimulationConfiguration(num_trials=5), seed=1)
    with pytest.raises(ValueError, match="retain_trials"):
        trials_to_frame(metrics)

def test_moic_distribution(retained_metrics):
    summary = moic_distribution(retained_metrics)
    assert summary["p5"] <= summary["p50"] <= summary["p95"]
    assert 0.0 <= summary["prob_below_1x"] <= 1.0

def test_scenario_summary_frame(small_report):
    df = scenario_summary_frame(small_report)
    assert list(df["Target_MOIC"]) == [4.0, 5.4, 6.2]
    # 4.0x is below the 5.0x baseline
    assert df.loc[0, "Achievability_Score"] == 100.0
    assert df.loc[0, "Exit_Increase"] == 0.0
    assert df.loc[1, "Label"] == "Realistic"

def test_single_parameter_frame(small_report):
    df = single_parameter_frame(small_report)
    exit_rows = df[df["Parameter"] == ParameterFamily.EXIT_VALUATION.label]
    assert list(exit_rows["Adjustment_Percent"]) == [0.0, 10.0, 25.0]
    dilution_rows = df[df["Parameter"] == ParameterFamily.DILUTION.label]
    # Not achievable at 5.4x, so dropped from 6.2x
    assert len(dilution_rows) == 2
    assert not dilution_rows.iloc[1]["Achievable"]

def test_display_sensitivity_report(small_report, capsys):
    display_sensitivity_report(small_report)
    out = capsys.readouterr().out
    assert "Baseline MOIC: 5.00x" in out
    assert "Target 6.20x" in out
    assert "not achievable" in out

def test_plots_return_axes(retained_metrics, small_report):
    ax = plot_moic_distribution(retained_metrics)
    assert ax.get_xlabel() == "Portfolio MOIC"
    ax = plot_required_adjustments(small_report)
    assert "Single-Parameter" in ax.get_title()
    plt.close("all")

def test_forecast_summary_frame(deterministic_investment):
    report = run_forecast_analysis([deterministic_investment], SimulationConfiguration(num_trials=10))
    df = forecast_summary_frame(report)
    assert list(df["Scenario"]) == ["Baseline", "Optimistic Growth", "Base Case", "Downturn Scenario"]
    assert df.loc[0, "Avg_MOIC"] == pytest.approx(5.0)
    assert df["Weight"].iloc[1:].sum() == pytest.approx(1.0)
