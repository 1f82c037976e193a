# utils.py
import math
import numpy as np
from typing import Sequence, Tuple

# Newton-Raphson settings for the IRR solver
IRR_INITIAL_GUESS = 0.1
IRR_MAX_ITERATIONS = 100
IRR_TOLERANCE = 0.001


# Maps a unit draw u in [0, 1) onto [low, high]. A zero-width range returns its bound exactly.
def sample_uniform(bounds: Tuple[float, float], u: float) -> float:
    low, high = bounds
    if high == low:
        return low
    return low + (high - low) * u


# Percent draw in [0, 100) compared against probabilities expressed as percentages
def draw_percent(u: float) -> float:
    return u * 100.0


def clamp_percent(value: float) -> Tuple[float, bool]:
    """Clamps a percentage to [0, 100]. Returns the clamped value and whether clamping happened."""
    clamped = min(100.0, max(0.0, value))
    return clamped, clamped != value


def clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


# Net present value and its derivative for a yearly cash-flow vector indexed by year
def _npv_and_derivative(rate: float, cash_flows: np.ndarray) -> Tuple[float, float]:
    years = np.arange(len(cash_flows))
    discount = (1 + rate) ** years
    npv = float(np.sum(cash_flows / discount))
    dnpv = float(np.sum(-years * cash_flows / (discount * (1 + rate))))
    return npv, dnpv


def calculate_irr(cash_flows: Sequence[float]) -> float:
    """
    Internal rate of return of a yearly cash-flow timeline, as a fraction.

    Solves NPV(r) = sum(CF[t] / (1 + r)^t) = 0 with Newton-Raphson from r = 0.10,
    stopping when |NPV| < 0.001 or after 100 iterations.

    Args:
        cash_flows: Net fund cash flow for years 0, 1, 2, ... (negative = paid in)

    Returns:
        The rate as a fraction (0.15 == 15%), always above -1. Degenerate inputs return 0.0:
        fewer than two flows, no sign change, a vanishing derivative, or a
        non-finite iterate.
    """
    flows = np.asarray(cash_flows, dtype=float)
    # A solution is only possible if there are both positive and negative cash flows
    if len(flows) < 2 or not (np.any(flows > 0) and np.any(flows < 0)):
        return 0.0

    rate = IRR_INITIAL_GUESS
    with np.errstate(all='ignore'):
        for _ in range(IRR_MAX_ITERATIONS):
            npv, dnpv = _npv_and_derivative(rate, flows)
            if not (math.isfinite(npv) and math.isfinite(dnpv)):
                return 0.0
            if abs(npv) < IRR_TOLERANCE:
                break
            if dnpv == 0:
                return 0.0
            step = npv / dnpv
            if not math.isfinite(step):
                return 0.0
            # Rates at or below -100% are undefined; halve the step until the iterate stays above
            while rate - step <= -1:
                step /= 2
            rate = rate - step

    return float(rate)
