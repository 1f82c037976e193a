# ------------------------------------------------------------------------------
# --- File: tests/test_presets.py ---
# ------------------------------------------------------------------------------

import pytest

from parameters import Stage, STAGES_ORDER, TRANSITION_STAGES
from presets import FIELD_LABELS, build_investment_from_preset, get_field_presets, get_regional_exit_valuations


def test_software_presets():
    presets = get_field_presets("software")
    assert presets["stage_progression"][Stage.SEED] == 65.0
    assert presets["stage_progression"][Stage.IPO] == 35.0
    assert presets["dilution_rates"][Stage.SERIES_A] == 20.0
    assert presets["loss_probabilities"][Stage.PRE_SEED] == 25.0
    assert presets["loss_probabilities"][Stage.IPO] == 3.0

@pytest.mark.parametrize("field", list(FIELD_LABELS))
def test_every_field_covers_every_stage(field):
    presets = get_field_presets(field)
    assert set(presets["stage_progression"]) == set(TRANSITION_STAGES)
    assert set(presets["dilution_rates"]) == set(TRANSITION_STAGES)
    assert set(presets["loss_probabilities"]) == set(STAGES_ORDER)
    for region in ("US", "Europe"):
        ranges = get_regional_exit_valuations(field, region)
        assert set(ranges) == set(STAGES_ORDER)
        assert all(low <= high for low, high in ranges.values())

def test_us_uplift_rounds_half_up():
    europe = get_regional_exit_valuations("software", "Europe")
    us = get_regional_exit_valuations("software", "US")
    assert europe[Stage.PRE_SEED] == (3.0, 8.0)
    # 3 x 1.25 = 3.75 -> 4; 8 x 1.25 = 10
    assert us[Stage.PRE_SEED] == (4.0, 10.0)
    # 6 x 1.25 = 7.5 -> 8
    assert us[Stage.SEED] == (8.0, 20.0)
    assert us[Stage.IPO] == (1125.0, 5000.0)

def test_unknown_field_or_region():
    with pytest.raises(ValueError):
        get_field_presets("crypto")
    with pytest.raises(ValueError):
        get_regional_exit_valuations("software", "Asia")

def test_build_investment_from_preset_with_overrides():
    investment = build_investment_from_preset(
        "inv-1", "Acme", Stage.SEED, 1.0, 10.0, field="biotech",
        overrides={"dilution_rates": {Stage.SERIES_A: 10.0}},
    )
    assert investment.region == "Europe"
    assert investment.dilution_rates[Stage.SERIES_A] == 10.0
    assert investment.dilution_rates[Stage.SERIES_B] == 22.0
    assert investment.exit_valuations[Stage.IPO] == (1500.0, 6000.0)

    with pytest.raises(ValueError):
        build_investment_from_preset("inv-2", "Acme", Stage.SEED, 1.0, 10.0, field="biotech",
                                     overrides={"unknown": {}})
