# ------------------------------------------------------------------------------
# --- File: tests/conftest.py ---
# ------------------------------------------------------------------------------

import pytest
from parameters import Investment, SimulationConfiguration, Stage, TRANSITION_STAGES, STAGES_ORDER


def make_investment(
    investment_id="inv-1",
    entry_stage=Stage.SEED,
    check_size=1.0,
    entry_valuation=10.0,
    progression=0.0,
    dilution=0.0,
    loss=0.0,
    exit_range=(50.0, 50.0),
    years=(1.0, 1.0),
    **overrides
):
    """
    Builds an Investment with the same value for every stage of each family.
    Any family can be replaced wholesale through `overrides`.
    """
    values = dict(
        stage_progression={stage: progression for stage in TRANSITION_STAGES},
        dilution_rates={stage: dilution for stage in TRANSITION_STAGES},
        loss_probabilities={stage: loss for stage in STAGES_ORDER},
        exit_valuations={stage: exit_range for stage in STAGES_ORDER},
        years_to_next={stage: years for stage in TRANSITION_STAGES},
    )
    values.update(overrides)
    return Investment(
        investment_id=investment_id,
        company_name=f"Company {investment_id}",
        entry_stage=entry_stage,
        check_size=check_size,
        entry_valuation=entry_valuation,
        **values,
    )


@pytest.fixture
def deterministic_investment():
    """Never progresses, never fails, exits at exactly $50MM for 10% ownership: 5.0x."""
    return make_investment()


@pytest.fixture
def risky_portfolio():
    """A small portfolio with genuinely random outcomes."""
    return [
        make_investment("inv-1", Stage.SEED, 1.0, 10.0, progression=50.0, dilution=20.0, loss=30.0,
                        exit_range=(5.0, 60.0), years=(1.0, 3.0)),
        make_investment("inv-2", Stage.PRE_SEED, 0.5, 4.0, progression=40.0, dilution=15.0, loss=40.0,
                        exit_range=(2.0, 40.0), years=(1.0, 2.0)),
        make_investment("inv-3", Stage.SERIES_A, 2.0, 30.0, progression=60.0, dilution=10.0, loss=20.0,
                        exit_range=(20.0, 150.0), years=(1.0, 3.0)),
    ]


@pytest.fixture
def base_config():
    return SimulationConfiguration(num_trials=200)
