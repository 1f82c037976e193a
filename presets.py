# ==============================================================================
# --- VC Portfolio Model: Startup Field Presets (v1.0) ---
# ==============================================================================
#
# Research-based defaults per startup field: stage progression, dilution and
# loss probabilities, plus exit valuation ranges ($MM) for Europe with a
# field-specific uplift for the US market.
#
# ==============================================================================
import math
from typing import Dict, Optional, Tuple

from parameters import STAGES_ORDER, TRANSITION_STAGES, Investment, Stage

FIELD_LABELS = {
    "software": "Software",
    "deeptech": "Deep Tech",
    "biotech": "Biotech",
    "fintech": "FinTech",
    "ecommerce": "E-commerce",
    "healthcare": "Healthcare",
    "energy": "Energy",
    "foodtech": "Food Tech",
}

REGION_LABELS = {"US": "United States", "Europe": "Europe"}

# Progression and dilution are listed for Seed ... IPO; loss probabilities for Pre-Seed ... IPO
_FIELD_TABLE = {
    "software":   {"progression": (65, 45, 55, 48, 35), "dilution": (18, 20, 15, 12, 8),  "loss": (25, 20, 15, 10, 8, 3)},
    "deeptech":   {"progression": (45, 35, 42, 38, 25), "dilution": (22, 25, 20, 18, 12), "loss": (40, 35, 28, 20, 15, 8)},
    "biotech":    {"progression": (35, 25, 30, 28, 20), "dilution": (25, 28, 22, 20, 15), "loss": (50, 45, 40, 30, 25, 15)},
    "fintech":    {"progression": (58, 40, 48, 42, 30), "dilution": (20, 22, 18, 15, 10), "loss": (30, 25, 20, 15, 12, 6)},
    "ecommerce":  {"progression": (55, 38, 45, 40, 28), "dilution": (19, 21, 16, 14, 9),  "loss": (35, 30, 25, 18, 15, 8)},
    "healthcare": {"progression": (40, 30, 35, 32, 22), "dilution": (23, 26, 21, 19, 14), "loss": (45, 40, 35, 25, 20, 12)},
    "energy":     {"progression": (38, 28, 32, 30, 18), "dilution": (24, 27, 23, 21, 16), "loss": (48, 42, 38, 28, 22, 14)},
    "foodtech":   {"progression": (50, 33, 38, 35, 24), "dilution": (21, 24, 19, 17, 12), "loss": (42, 38, 32, 22, 18, 10)},
}

# European exit valuation ranges, Pre-Seed ... IPO
_BASE_EXIT_VALUATIONS = {
    "software":   ((3, 8), (6, 16), (25, 65), (70, 160), (180, 650), (900, 4000)),
    "fintech":    ((3, 9), (7, 18), (28, 70), (75, 180), (200, 700), (1000, 4500)),
    "deeptech":   ((2, 6), (5, 12), (20, 50), (60, 140), (150, 500), (800, 3500)),
    "biotech":    ((4, 12), (8, 25), (35, 90), (100, 250), (300, 1000), (1500, 6000)),
    "healthcare": ((3, 10), (7, 20), (30, 75), (80, 200), (220, 750), (1200, 5000)),
    "ecommerce":  ((2, 7), (5, 15), (22, 60), (65, 150), (160, 550), (800, 3800)),
    "energy":     ((3, 8), (6, 16), (25, 65), (70, 170), (200, 700), (1000, 4500)),
    "foodtech":   ((2, 6), (4, 12), (18, 45), (50, 120), (140, 450), (700, 3000)),
}

# US exits are priced above European ones by these factors
US_MULTIPLIERS = {
    "software": 1.25,
    "fintech": 1.30,
    "deeptech": 1.20,
    "biotech": 1.35,
    "healthcare": 1.25,
    "ecommerce": 1.15,
    "energy": 1.20,
    "foodtech": 1.18,
}


def _check_field(field: str) -> None:
    if field not in _FIELD_TABLE:
        raise ValueError(f"Unknown startup field '{field}'. Expected one of: {', '.join(FIELD_LABELS)}")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def get_field_presets(field: str) -> Dict[str, Dict[Stage, float]]:
    """
    Returns the stage progression, dilution and loss probability presets for a field.

    Returns:
        Dictionary with 'stage_progression', 'dilution_rates' and 'loss_probabilities',
        each keyed by Stage
    """
    _check_field(field)
    row = _FIELD_TABLE[field]
    return {
        "stage_progression": {stage: float(v) for stage, v in zip(TRANSITION_STAGES, row["progression"])},
        "dilution_rates": {stage: float(v) for stage, v in zip(TRANSITION_STAGES, row["dilution"])},
        "loss_probabilities": {stage: float(v) for stage, v in zip(STAGES_ORDER, row["loss"])},
    }


def get_regional_exit_valuations(field: str, region: str) -> Dict[Stage, Tuple[float, float]]:
    """Exit valuation ranges for a field, with the US uplift applied and rounded to whole $MM."""
    _check_field(field)
    if region not in REGION_LABELS:
        raise ValueError(f"Unknown region '{region}'. Expected one of: {', '.join(REGION_LABELS)}")

    multiplier = US_MULTIPLIERS[field] if region == "US" else 1.0
    return {
        stage: (float(_round_half_up(low * multiplier)), float(_round_half_up(high * multiplier)))
        for stage, (low, high) in zip(STAGES_ORDER, _BASE_EXIT_VALUATIONS[field])
    }


def build_investment_from_preset(
    investment_id: str,
    company_name: str,
    entry_stage: Stage,
    check_size: float,
    entry_valuation: float,
    field: str,
    region: str = "Europe",
    overrides: Optional[Dict] = None
) -> Investment:
    """Builds an Investment from the field/region presets; entries in `overrides` replace preset values per stage."""
    presets = get_field_presets(field)
    values = {
        "stage_progression": presets["stage_progression"],
        "dilution_rates": presets["dilution_rates"],
        "loss_probabilities": presets["loss_probabilities"],
        "exit_valuations": get_regional_exit_valuations(field, region),
        "years_to_next": {},
    }
    for key, stage_values in (overrides or {}).items():
        if key not in values:
            raise ValueError(f"Unknown preset override '{key}'")
        values[key] = {**values[key], **stage_values}

    return Investment(
        investment_id=investment_id,
        company_name=company_name,
        entry_stage=entry_stage,
        check_size=check_size,
        entry_valuation=entry_valuation,
        field=field,
        region=region,
        **values,
    )
