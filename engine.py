# ==============================================================================
# --- VC Portfolio Model: Core Simulation Engine (v1.0) ---
# ==============================================================================
#
# Monte Carlo engine for a fixed portfolio of venture investments. Each trial
# walks every investment through its funding stages, builds the fund's yearly
# cash-flow timeline and reduces it to MOIC and IRR. Trials are folded into
# FundMetrics.
#
# Every investment consumes a fixed-shape block of uniform draws per trial, so
# two runs with the same seed see the same draws even when the investment
# parameters differ. The sensitivity search relies on this.
#
# ==============================================================================
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from parameters import (
    FOLLOW_ON_STEP_UP, MIN_HOLDING_YEARS, STAGES_ORDER, TRANSITION_STAGES,
    FollowOnInvestment, FollowOnStrategy, FundMetrics, Investment, PortfolioTrial,
    SimulationConfiguration, SimulationTrial, Stage, validate_inputs,
)
from utils import calculate_irr, clamp_percent, clamp_unit, draw_percent, sample_uniform


class SimulationCancelled(RuntimeError):
    """Raised when a cancellation event is set while a simulation or search is running."""


ProgressCallback = Callable[[float, str], None]


# --------------------------------------------------------------------------
# --- Randomness Layout ---
# --------------------------------------------------------------------------
# Per transition (indexed by destination stage): advance, years, follow-on trigger, step-up.
# Tail: holding period fallback, loss check, exit valuation, deployment year.
_DRAW_ADVANCE, _DRAW_YEARS, _DRAW_FOLLOW_ON, _DRAW_STEP_UP = range(4)
_DRAWS_PER_TRANSITION = 4
_TAIL_OFFSET = len(TRANSITION_STAGES) * _DRAWS_PER_TRANSITION
_DRAW_HOLDING, _DRAW_LOSS, _DRAW_EXIT, _DRAW_DEPLOYMENT = range(_TAIL_OFFSET, _TAIL_OFFSET + 4)
DRAWS_PER_INVESTMENT = _TAIL_OFFSET + 4


def draw_investment_randomness(rng: np.random.Generator) -> np.ndarray:
    """Draws every uniform an investment can consume in one trial, whether or not the path uses it."""
    return rng.random(DRAWS_PER_INVESTMENT)


def _transition_draw(draws: np.ndarray, stage: Stage, which: int) -> float:
    return float(draws[TRANSITION_STAGES.index(stage) * _DRAWS_PER_TRANSITION + which])


# --------------------------------------------------------------------------
# --- Input Sanitation ---
# --------------------------------------------------------------------------

def _clamp_family(values, name: str, investment_id: str, warnings: List[str]):
    clamped = {}
    for stage, value in values.items():
        clamped[stage], was_clamped = clamp_percent(value)
        if was_clamped:
            warnings.append(f"{investment_id}: {name} at {stage.value} clamped from {value} to {clamped[stage]}")
    return clamped


def sanitize_investment(investment: Investment) -> Tuple[Investment, List[str]]:
    """Clamps out-of-range percentages to [0, 100] and reports what was changed."""
    warnings: List[str] = []
    sanitized = replace(
        investment,
        stage_progression=_clamp_family(investment.stage_progression, "stage progression", investment.investment_id, warnings),
        dilution_rates=_clamp_family(investment.dilution_rates, "dilution rate", investment.investment_id, warnings),
        loss_probabilities=_clamp_family(investment.loss_probabilities, "loss probability", investment.investment_id, warnings),
    )
    for warning in warnings:
        logging.warning(f"Input clamped: {warning}")
    return sanitized, warnings


def _sanitize_strategy(strategy: FollowOnStrategy, warnings: List[str]) -> FollowOnStrategy:
    updates = {}
    for name in ("early_follow_on_rate", "recycling_rate", "reserve_ratio"):
        value = getattr(strategy, name)
        clamped, was_clamped = clamp_percent(value)
        if was_clamped:
            warnings.append(f"follow-on strategy: {name} clamped from {value} to {clamped}")
            logging.warning(f"Input clamped: follow-on strategy {name} {value} -> {clamped}")
            updates[name] = clamped
    reserve_ratio = updates.get("reserve_ratio", strategy.reserve_ratio)
    if strategy.enable_early_follow_ons and reserve_ratio <= 0:
        warnings.append("follow-on strategy: early follow-ons are enabled but reserve_ratio is 0, so none can be funded")
        logging.warning("Early follow-ons enabled with a 0% reserve; no follow-on checks will be written")
    return replace(strategy, **updates) if updates else strategy


# --------------------------------------------------------------------------
# --- Investment Path Simulator ---
# --------------------------------------------------------------------------

def simulate_investment(
    investment: Investment,
    draws: np.ndarray,
    follow_on_strategy: Optional[FollowOnStrategy] = None,
    reserve_available: float = math.inf,
    deployment_years: int = 1
) -> SimulationTrial:
    """
    Simulates one investment's journey from its entry stage to exit.

    At each transition the company advances with the destination stage's
    progression probability, suffering that round's dilution and taking a
    sampled number of years. Where it stops, a loss check decides between a
    write-off and an exit valued uniformly within the stage's range.

    Args:
        investment: Company assumptions (percentages already clamped)
        draws: Block from draw_investment_randomness
        follow_on_strategy: Early follow-on rules; None disables follow-ons
        reserve_available: Reserve capital left for follow-ons in this trial
        deployment_years: Width of the initial deployment window in years

    Returns:
        SimulationTrial describing the path and its multiple
    """
    ownership = investment.initial_ownership
    total_invested = investment.check_size
    follow_ons: List[FollowOnInvestment] = []
    elapsed_years = 0.0
    progressed = False

    deployment_year = min(deployment_years - 1, int(draws[_DRAW_DEPLOYMENT] * deployment_years))
    follow_ons_enabled = follow_on_strategy is not None and follow_on_strategy.enable_early_follow_ons

    current_stage = investment.entry_stage
    for stage in STAGES_ORDER[STAGES_ORDER.index(investment.entry_stage) + 1:]:
        if not draw_percent(_transition_draw(draws, stage, _DRAW_ADVANCE)) < investment.progression_to(stage):
            break

        progressed = True
        elapsed_years += sample_uniform(investment.years_range_to(stage), _transition_draw(draws, stage, _DRAW_YEARS))

        # Follow-on equity is bought in the round and diluted alongside the existing stake
        if follow_ons_enabled and stage != Stage.IPO and \
                draw_percent(_transition_draw(draws, stage, _DRAW_FOLLOW_ON)) < follow_on_strategy.early_follow_on_rate:
            amount = investment.check_size * follow_on_strategy.early_follow_on_multiple
            if 0 < amount <= reserve_available:
                step_up = sample_uniform(FOLLOW_ON_STEP_UP[stage], _transition_draw(draws, stage, _DRAW_STEP_UP))
                equity = amount / (investment.entry_valuation * step_up)
                ownership += equity
                total_invested += amount
                reserve_available -= amount
                follow_ons.append(FollowOnInvestment(
                    stage=stage, amount=amount, equity=equity,
                    year=deployment_year + math.ceil(elapsed_years),
                ))

        ownership = clamp_unit(ownership * (1 - investment.dilution_into(stage) / 100))
        current_stage = stage

    if progressed:
        holding_period = elapsed_years
    else:
        holding_period = sample_uniform(MIN_HOLDING_YEARS[current_stage], float(draws[_DRAW_HOLDING]))

    ownership = clamp_unit(ownership)
    is_loss = draw_percent(float(draws[_DRAW_LOSS])) < investment.loss_probability_at(current_stage)
    if is_loss:
        exit_amount = 0.0
    else:
        exit_amount = ownership * sample_uniform(investment.exit_range_at(current_stage), float(draws[_DRAW_EXIT]))

    return SimulationTrial(
        investment_id=investment.investment_id,
        company_name=investment.company_name,
        entry_stage=investment.entry_stage,
        exit_stage=current_stage,
        entry_amount=total_invested,
        exit_amount=exit_amount,
        initial_ownership=investment.initial_ownership,
        final_ownership=ownership,
        holding_period=holding_period,
        deployment_year=deployment_year,
        exit_year=deployment_year + math.ceil(holding_period),
        moic=exit_amount / total_invested if total_invested > 0 else 0.0,
        is_loss=is_loss,
        follow_on_investments=tuple(follow_ons),
    )


# --------------------------------------------------------------------------
# --- Fund Simulation Runner ---
# --------------------------------------------------------------------------

def _offset_flows(cash_flows: np.ndarray, events: List[Tuple[int, float]], amount: float, sign: float) -> None:
    """Moves `amount` through the listed (year, size) events in chronological order."""
    for year, size in sorted(events):
        if amount <= 0:
            break
        portion = min(size, amount)
        cash_flows[year] += sign * portion
        amount -= portion


def run_portfolio_trial(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    rng: np.random.Generator
) -> PortfolioTrial:
    """
    Simulates the whole portfolio once and builds the fund's yearly cash-flow timeline.

    Timeline: setup fee in year 0, management fees in years [0, fee_years),
    initial checks in their deployment year, follow-ons in the year of their
    round, exit proceeds in deployment year + ceil(holding period).
    Recycled exit proceeds fund follow-ons instead of LP capital, so they
    reduce both paid-in and distributed capital.
    """
    strategy = config.follow_on_strategy
    reserve = sum(inv.check_size for inv in investments) * strategy.reserve_ratio / 100

    trials: List[SimulationTrial] = []
    for investment in investments:
        trial = simulate_investment(
            investment, draw_investment_randomness(rng), strategy,
            reserve_available=reserve, deployment_years=config.deployment_years,
        )
        reserve -= sum(fo.amount for fo in trial.follow_on_investments)
        trials.append(trial)

    invested = sum(t.entry_amount for t in trials)
    exits = sum(t.exit_amount for t in trials)
    fees = config.total_fees
    follow_on_capital = sum(fo.amount for t in trials for fo in t.follow_on_investments)

    recycled = 0.0
    if strategy.enable_recycling:
        recycled = min(exits * strategy.recycling_rate / 100, follow_on_capital)

    paid_in = invested + fees - recycled
    distributed = exits - recycled
    moic = distributed / paid_in if paid_in > 0 else 0.0

    horizon = max([config.management_fee_years] + [t.exit_year + 1 for t in trials] + [1])
    cash_flows = np.zeros(horizon)
    cash_flows[0] -= config.setup_fees
    cash_flows[:config.management_fee_years] -= config.management_fees

    follow_on_events: List[Tuple[int, float]] = []
    exit_events: List[Tuple[int, float]] = []
    for t in trials:
        cash_flows[t.deployment_year] -= t.entry_amount - sum(fo.amount for fo in t.follow_on_investments)
        for fo in t.follow_on_investments:
            cash_flows[fo.year] -= fo.amount
            follow_on_events.append((fo.year, fo.amount))
        cash_flows[t.exit_year] += t.exit_amount
        if t.exit_amount > 0:
            exit_events.append((t.exit_year, t.exit_amount))

    if recycled > 0:
        _offset_flows(cash_flows, follow_on_events, recycled, +1.0)
        _offset_flows(cash_flows, exit_events, recycled, -1.0)

    return PortfolioTrial(
        trials=tuple(trials),
        invested=invested,
        fees=fees,
        recycled=recycled,
        paid_in=paid_in,
        distributed=distributed,
        moic=moic,
        irr=calculate_irr(cash_flows),
        cash_flows=tuple(float(cf) for cf in cash_flows),
    )


# Running totals over a set of trials. Chunks fold independently and combine with `+`.
@dataclass(frozen=True)
class TrialTotals:
    count: int = 0
    successes: int = 0
    irr: float = 0.0
    invested: float = 0.0
    fees: float = 0.0
    recycled: float = 0.0
    paid_in: float = 0.0
    distributed: float = 0.0
    exits: float = 0.0

    @classmethod
    def from_trial(cls, trial: PortfolioTrial) -> 'TrialTotals':
        return cls(
            count=1,
            successes=int(trial.moic >= 1.0),
            irr=trial.irr,
            invested=trial.invested,
            fees=trial.fees,
            recycled=trial.recycled,
            paid_in=trial.paid_in,
            distributed=trial.distributed,
            exits=trial.distributed + trial.recycled,
        )

    def __add__(self, other: 'TrialTotals') -> 'TrialTotals':
        return TrialTotals(
            count=self.count + other.count,
            successes=self.successes + other.successes,
            irr=self.irr + other.irr,
            invested=self.invested + other.invested,
            fees=self.fees + other.fees,
            recycled=self.recycled + other.recycled,
            paid_in=self.paid_in + other.paid_in,
            distributed=self.distributed + other.distributed,
            exits=self.exits + other.exits,
        )


def _metrics_from_totals(
    totals: TrialTotals,
    fund_size: float = 0.0,
    warnings: Sequence[str] = (),
    trials: Optional[Tuple[PortfolioTrial, ...]] = None
) -> FundMetrics:
    n = totals.count
    if n == 0:
        return FundMetrics(num_trials=0, avg_moic=0.0, avg_irr=0.0, avg_distributed=0.0,
                           total_paid_in=0.0, success_rate=0.0, fund_size=fund_size,
                           warnings=tuple(warnings), trials=trials)

    avg_paid_in = totals.paid_in / n
    avg_distributed = totals.distributed / n
    avg_irr = totals.irr / n
    return FundMetrics(
        num_trials=n,
        avg_moic=avg_distributed / avg_paid_in if avg_paid_in > 0 else 0.0,
        avg_irr=avg_irr if math.isfinite(avg_irr) else 0.0,
        avg_distributed=avg_distributed,
        total_paid_in=avg_paid_in,
        success_rate=totals.successes / n,
        avg_total_invested=totals.invested / n,
        avg_recycled_capital=totals.recycled / n,
        avg_fees=totals.fees / n,
        fund_size=fund_size,
        gross_moic=totals.exits / totals.invested if totals.invested > 0 else 0.0,
        warnings=tuple(warnings),
        trials=trials,
    )


def aggregate_trials(
    portfolio_trials: Iterable[PortfolioTrial],
    fund_size: float = 0.0,
    warnings: Sequence[str] = (),
    retain_trials: bool = False
) -> FundMetrics:
    """Folds portfolio trials into FundMetrics."""
    kept = tuple(portfolio_trials)
    totals = sum((TrialTotals.from_trial(t) for t in kept), TrialTotals())
    return _metrics_from_totals(totals, fund_size, warnings, kept if retain_trials else None)


def calculate_fund_size(investments: Sequence[Investment], config: SimulationConfiguration) -> float:
    """Initial checks + follow-on reserve + fees."""
    checks = sum(inv.check_size for inv in investments)
    return checks + config.total_fees + checks * config.follow_on_strategy.reserve_ratio / 100


def _run_chunk(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    trial_seeds: Sequence[int],
    retain_trials: bool,
    cancel_event: Optional[threading.Event]
) -> Tuple[TrialTotals, List[PortfolioTrial]]:
    totals = TrialTotals()
    kept: List[PortfolioTrial] = []
    for trial_seed in trial_seeds:
        if cancel_event is not None and cancel_event.is_set():
            raise SimulationCancelled("Simulation cancelled")
        trial = run_portfolio_trial(investments, config, np.random.default_rng(trial_seed))
        totals = totals + TrialTotals.from_trial(trial)
        if retain_trials:
            kept.append(trial)
    return totals, kept


def run_monte_carlo(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    retain_trials: bool = False,
    n_workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
    verbose: bool = False
) -> FundMetrics:
    """
    Orchestrates the Monte Carlo simulation of the portfolio.

    Each trial gets its own generator seeded from the master generator, so a
    seeded run gives the same FundMetrics for any number of workers.

    Args:
        investments: Portfolio companies
        config: Fund economics and number of trials
        seed: Seed for the master generator (ignored when `rng` is given)
        rng: Injected master generator
        retain_trials: Keep every PortfolioTrial on the returned metrics
        n_workers: Trials are split into this many chunks run on a thread pool
        cancel_event: Checked between trials; when set, SimulationCancelled is raised
        verbose: Print progress lines

    Returns:
        FundMetrics for the run
    """
    validate_inputs(list(investments), config)

    warnings: List[str] = []
    sanitized: List[Investment] = []
    for investment in investments:
        clean, flags = sanitize_investment(investment)
        sanitized.append(clean)
        warnings.extend(flags)
    strategy = _sanitize_strategy(config.follow_on_strategy, warnings)
    if strategy is not config.follow_on_strategy:
        config = replace(config, follow_on_strategy=strategy)

    master_rng = rng if rng is not None else np.random.default_rng(seed)
    trial_seeds = [int(master_rng.integers(1e9)) for _ in range(config.num_trials)]

    logging.info(f"Starting Monte Carlo simulation: {config.num_trials} trials, "
                 f"{len(sanitized)} investments, seed={seed}, workers={n_workers}")
    if verbose:
        print(f"Running {config.num_trials} portfolio simulations...")

    if n_workers <= 1 or config.num_trials < 2:
        totals, kept = TrialTotals(), []
        step = max(1, config.num_trials // 10)
        for start in range(0, config.num_trials, step):
            chunk_totals, chunk_kept = _run_chunk(sanitized, config, trial_seeds[start:start + step],
                                                  retain_trials, cancel_event)
            totals = totals + chunk_totals
            kept.extend(chunk_kept)
            if verbose and config.num_trials >= 100:
                done = min(config.num_trials, start + step)
                print(f"  Progress: {done}/{config.num_trials} ({done / config.num_trials:.0%}) complete")
    else:
        chunks = [list(chunk) for chunk in np.array_split(trial_seeds, n_workers) if len(chunk)]
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [pool.submit(_run_chunk, sanitized, config, chunk, retain_trials, cancel_event)
                       for chunk in chunks]
            results = [future.result() for future in futures]
        totals = sum((chunk_totals for chunk_totals, _ in results), TrialTotals())
        kept = [trial for _, chunk_kept in results for trial in chunk_kept]

    metrics = _metrics_from_totals(
        totals,
        fund_size=calculate_fund_size(sanitized, config),
        warnings=warnings,
        trials=tuple(kept) if retain_trials else None,
    )

    logging.info(f"Monte Carlo simulation complete: avg MOIC {metrics.avg_moic:.2f}x, "
                 f"avg IRR {metrics.avg_irr:.1%}, success rate {metrics.success_rate:.0%}")
    if verbose:
        print(f"Monte Carlo simulation complete: {metrics.num_trials} trials, avg MOIC {metrics.avg_moic:.2f}x")

    return metrics


def debug_one_simulation(
    investments: Sequence[Investment],
    config: SimulationConfiguration,
    rng: np.random.Generator,
    verbose: bool = True
) -> PortfolioTrial:
    """
    Runs a single portfolio trial with a step-by-step printout of every investment's path.

    Args:
        investments: Portfolio companies
        config: Fund economics
        rng: Pre-configured random number generator
        verbose: Print the per-investment breakdown

    Returns:
        The PortfolioTrial, including the yearly cash-flow timeline
    """
    validate_inputs(list(investments), config)
    sanitized = [sanitize_investment(inv)[0] for inv in investments]
    trial = run_portfolio_trial(sanitized, config, rng)

    if verbose:
        print(f"\n{'=' * 60}")
        print(f"SINGLE PORTFOLIO SIMULATION: {len(trial.trials)} investments")
        print(f"{'=' * 60}")
        for t in trial.trials:
            outcome = "LOSS" if t.is_loss else f"EXIT ${t.exit_amount:,.2f}MM"
            print(f"{t.company_name}: {t.entry_stage.value} -> {t.exit_stage.value} ({outcome})")
            print(f"  • Invested: ${t.entry_amount:,.2f}MM in year {t.deployment_year}")
            print(f"  • Ownership: {t.initial_ownership:.2%} -> {t.final_ownership:.2%}")
            print(f"  • Holding period: {t.holding_period:.1f} years (exit year {t.exit_year})")
            for fo in t.follow_on_investments:
                print(f"  • Follow-on at {fo.stage.value}: ${fo.amount:,.2f}MM for {fo.equity:.2%} in year {fo.year}")
            print(f"  • Multiple: {t.moic:.2f}x")
        print(f"\nFund totals:")
        print(f"  • Paid in: ${trial.paid_in:,.2f}MM (fees ${trial.fees:,.2f}MM, recycled ${trial.recycled:,.2f}MM)")
        print(f"  • Distributed: ${trial.distributed:,.2f}MM")
        print(f"  • MOIC: {trial.moic:.2f}x, IRR: {trial.irr:.1%}")
        print(f"  • Cash flows: {[round(cf, 2) for cf in trial.cash_flows]}")

    logging.info(f"Debug simulation complete: MOIC {trial.moic:.2f}x, IRR {trial.irr:.1%}")
    return trial
