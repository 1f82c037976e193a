# analysis_utils.py

import math
import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Sequence
from parameters import ForecastReport, FundMetrics, ParameterFamily, SensitivityReport


def _require_trials(metrics: FundMetrics):
    if metrics.trials is None:
        raise ValueError("FundMetrics has no retained trials. Re-run run_monte_carlo with retain_trials=True.")
    return metrics.trials


def trials_to_frame(metrics: FundMetrics) -> pd.DataFrame:
    """One row per portfolio trial: capital in and out, MOIC and IRR."""
    rows = []
    for i, trial in enumerate(_require_trials(metrics), 1):
        rows.append({
            "Trial": i,
            "Invested": trial.invested,
            "Fees": trial.fees,
            "Recycled": trial.recycled,
            "Paid_In": trial.paid_in,
            "Distributed": trial.distributed,
            "MOIC": trial.moic,
            "IRR": trial.irr,
            "Losses": sum(1 for t in trial.trials if t.is_loss),
        })
    return pd.DataFrame(rows)


def investment_outcomes_frame(metrics: FundMetrics) -> pd.DataFrame:
    """One row per investment per trial."""
    rows = []
    for i, trial in enumerate(_require_trials(metrics), 1):
        for t in trial.trials:
            rows.append({
                "Trial": i,
                "Investment_ID": t.investment_id,
                "Company": t.company_name,
                "Entry_Stage": t.entry_stage.value,
                "Exit_Stage": t.exit_stage.value,
                "Invested": t.entry_amount,
                "Exit_Amount": t.exit_amount,
                "Final_Ownership": t.final_ownership,
                "Holding_Years": t.holding_period,
                "Follow_Ons": len(t.follow_on_investments),
                "MOIC": t.moic,
                "Is_Loss": t.is_loss,
            })
    return pd.DataFrame(rows)


def moic_distribution(metrics: FundMetrics, percentiles: Sequence[float] = (5, 25, 50, 75, 95)) -> pd.Series:
    """Summary statistics of the portfolio MOIC across retained trials."""
    moics = np.array([trial.moic for trial in _require_trials(metrics)])
    summary = {
        "mean": float(moics.mean()),
        "std": float(moics.std()),
    }
    for p in percentiles:
        summary[f"p{p:g}"] = float(np.percentile(moics, p))
    summary["prob_below_1x"] = float((moics < 1.0).mean())
    summary["prob_above_3x"] = float((moics >= 3.0).mean())
    return pd.Series(summary, name="MOIC")


def scenario_summary_frame(report: SensitivityReport) -> pd.DataFrame:
    rows = []
    for scenario in report.target_scenarios:
        primary = scenario.required_adjustments
        rows.append({
            "Target_MOIC": scenario.target_moic,
            "Achievability_Score": scenario.achievability_score,
            "Label": scenario.label,
            "Realistic": scenario.is_realistic,
            "Progression_Increase": primary.stage_progression_increase if primary else np.nan,
            "Dilution_Decrease": primary.dilution_decrease if primary else np.nan,
            "Loss_Decrease": primary.loss_probability_decrease if primary else np.nan,
            "Exit_Increase": primary.exit_valuation_increase if primary else np.nan,
            "Adjusted_MOIC": scenario.adjusted_metrics.avg_moic if scenario.adjusted_metrics else np.nan,
            "Mixed_Options": len(scenario.mixed_parameter_options),
        })
    return pd.DataFrame(rows)


def single_parameter_frame(report: SensitivityReport) -> pd.DataFrame:
    """One row per (target, parameter family) with the single-parameter search result."""
    rows = []
    for scenario in report.target_scenarios:
        for option in scenario.single_parameter_options:
            rows.append({
                "Target_MOIC": scenario.target_moic,
                "Parameter": option.family.label,
                "Adjustment_Percent": option.adjustment_percent,
                "Achievable": option.achievable,
                "Actual_Requirement": option.actual_requirement,
                "Adjusted_MOIC": option.metrics.avg_moic if option.metrics else np.nan,
                "Bound_Violations": "; ".join(option.bound_violations),
            })
    return pd.DataFrame(rows)


def forecast_summary_frame(report: ForecastReport) -> pd.DataFrame:
    """Baseline row followed by one row per forecast scenario, with its probability weight."""
    rows = [{
        "Scenario": "Baseline",
        "Weight": np.nan,
        "Avg_MOIC": report.baseline_metrics.avg_moic,
        "Avg_IRR": report.baseline_metrics.avg_irr,
        "Avg_Distributed": report.baseline_metrics.avg_distributed,
        "Success_Rate": report.baseline_metrics.success_rate,
    }]
    for forecast in report.forecasts:
        rows.append({
            "Scenario": forecast.scenario.name,
            "Weight": forecast.weight,
            "Avg_MOIC": forecast.metrics.avg_moic,
            "Avg_IRR": forecast.metrics.avg_irr,
            "Avg_Distributed": forecast.metrics.avg_distributed,
            "Success_Rate": forecast.metrics.success_rate,
        })
    return pd.DataFrame(rows)


def display_sensitivity_report(report: SensitivityReport):
    """Prints the sensitivity report: one block per target with single and mixed recipes."""
    baseline = report.baseline_metrics
    print("--- Sensitivity Analysis ---")
    print(f"Baseline MOIC: {report.baseline_moic:.2f}x")
    print(f"Baseline IRR: {baseline.avg_irr:.2%}")
    print(f"Success Rate: {baseline.success_rate:.1%}")
    print("-" * 25)

    for scenario in report.target_scenarios:
        print(f"\nTarget {scenario.target_moic:.2f}x: {scenario.label} "
              f"(score {scenario.achievability_score:.0f}/100, {scenario.achievability.explanation})")

        for option in scenario.single_parameter_options:
            sign = "-" if option.family.is_decrease else "+"
            if option.achievable:
                print(f"  • {option.family.label}: {sign}{option.adjustment_percent:.0f}%")
            else:
                requirement = option.actual_requirement
                needed = "unreachable" if requirement is None or math.isinf(requirement) else f"~{sign}{requirement:.0f}%"
                print(f"  • {option.family.label}: not achievable ({needed})")
                for violation in option.bound_violations:
                    print(f"      - {violation}")
        for family in scenario.suppressed_families:
            print(f"  • {family.label}: already at -100% for a lower target")

        for option in scenario.mixed_parameter_options:
            print(f"  ◦ {option.name} [{option.approach_type.value}]: total {option.total_adjustment:.1f}% "
                  f"-> {option.metrics.avg_moic:.2f}x")

        for factor in scenario.achievability.factors:
            print(f"    {factor.name} ({factor.weight:.0%}): {factor.score:.0f} - {factor.explanation}")


def plot_moic_distribution(metrics: FundMetrics, ax=None):
    """Histogram of portfolio MOIC across retained trials, with the average marked."""
    df = trials_to_frame(metrics)
    if ax is None:
        _, ax = plt.subplots(figsize=(8, 5))

    sns.histplot(df["MOIC"], bins=40, kde=True, ax=ax, color="steelblue")
    ax.axvline(metrics.avg_moic, color="red", linestyle="--", label=f"Average {metrics.avg_moic:.2f}x")
    ax.axvline(1.0, color="grey", linestyle=":", label="1.0x")
    ax.set_xlabel("Portfolio MOIC")
    ax.set_ylabel("Trials")
    ax.set_title(f"MOIC Distribution ({metrics.num_trials} trials)")
    ax.legend()
    return ax


def plot_required_adjustments(report: SensitivityReport, ax=None):
    """Grouped bars of the single-parameter adjustment each target needs; unreachable bars are hatched."""
    df = single_parameter_frame(report)
    if ax is None:
        _, ax = plt.subplots(figsize=(9, 5))
    if df.empty:
        ax.set_title("No targets above the baseline")
        return ax

    families = [f.label for f in ParameterFamily]
    targets = sorted(df["Target_MOIC"].unique())
    width = 0.8 / len(families)
    palette = sns.color_palette("deep", len(families))

    labelled = set()
    for i, label in enumerate(families):
        subset = df[df["Parameter"] == label].set_index("Target_MOIC")
        for j, target in enumerate(targets):
            if target not in subset.index:
                continue
            row = subset.loc[target]
            ax.bar(j + i * width, row["Adjustment_Percent"], width, color=palette[i],
                   hatch=None if row["Achievable"] else "//", label=None if label in labelled else label)
            labelled.add(label)

    ax.set_xticks([j + 0.4 - width / 2 for j in range(len(targets))])
    ax.set_xticklabels([f"{t:.1f}x" for t in targets])
    ax.set_ylabel("Required adjustment (%)")
    ax.set_title("Single-Parameter Adjustments by Target MOIC")
    ax.legend()
    ax.grid(True, axis="y", linestyle="--", linewidth=0.5)
    return ax
