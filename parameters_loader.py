# ==============================================================================
# --- VC Portfolio Model: Parameter Loader & Validator (v1.0) ---
# ==============================================================================

import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

import jsonschema
import yaml

from forecast import validate_scenarios
from parameters import (
    FollowOnStrategy, ForecastScenario, Investment, MacroeconomicFactors, PortfolioConfig, SectorTrend,
    SensitivityOptions, SimulationConfiguration, Stage, validate_inputs, validate_sensitivity_options,
)
from presets import build_investment_from_preset

DEFAULT_SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.schema.json')

_PERCENT_FAMILIES = ('stage_progression', 'dilution_rates', 'loss_probabilities')
_RANGE_FAMILIES = ('exit_valuations', 'years_to_next')


def _parse_stage(name: str, context: str) -> Stage:
    try:
        return Stage(name)
    except ValueError:
        raise ValueError(f"Logical Error: Unknown stage '{name}' in {context}.") from None


def _stage_values(data: Dict[str, Any], context: str) -> Dict[Stage, float]:
    return {_parse_stage(name, context): float(value) for name, value in (data or {}).items()}


def _stage_ranges(data: Dict[str, Any], context: str) -> Dict[Stage, Tuple[float, float]]:
    ranges = {}
    for name, bounds in (data or {}).items():
        if len(bounds) != 2:
            raise ValueError(f"Logical Error: {context} for '{name}' must be a [min, max] pair.")
        ranges[_parse_stage(name, context)] = (float(bounds[0]), float(bounds[1]))
    return ranges


def parse_investment(data: Dict[str, Any]) -> Investment:
    """
    Builds an Investment from one entry of the 'investments' list.

    With `use_presets: true` the field/region presets provide every per-stage
    value, and any per-stage values given explicitly replace the preset ones.
    """
    investment_id = str(data['id'])
    context = f"investment '{investment_id}'"
    entry_stage = _parse_stage(data['entry_stage'], context)

    explicit = {key: _stage_values(data.get(key), context) for key in _PERCENT_FAMILIES}
    explicit.update({key: _stage_ranges(data.get(key), context) for key in _RANGE_FAMILIES})

    if data.get('use_presets', False):
        if 'field' not in data:
            raise ValueError(f"Logical Error: {context} uses presets but does not name a 'field'.")
        return build_investment_from_preset(
            investment_id=investment_id,
            company_name=data.get('company_name', investment_id),
            entry_stage=entry_stage,
            check_size=float(data['check_size']),
            entry_valuation=float(data['entry_valuation']),
            field=data['field'],
            region=data.get('region', 'Europe'),
            overrides={key: values for key, values in explicit.items() if values},
        )

    return Investment(
        investment_id=investment_id,
        company_name=data.get('company_name', investment_id),
        entry_stage=entry_stage,
        check_size=float(data['check_size']),
        entry_valuation=float(data['entry_valuation']),
        field=data.get('field'),
        region=data.get('region'),
        **explicit,
    )


def parse_simulation_config(simulation: Dict[str, Any], follow_on: Dict[str, Any] = None) -> SimulationConfiguration:
    follow_on = follow_on or {}
    return SimulationConfiguration(
        num_trials=int(simulation['num_trials']),
        setup_fees=float(simulation.get('setup_fees', 0.0)),
        management_fees=float(simulation.get('management_fees', 0.0)),
        management_fee_years=int(simulation.get('management_fee_years', 0)),
        deployment_years=int(simulation.get('deployment_years', 1)),
        follow_on_strategy=FollowOnStrategy(**follow_on),
    )


def parse_sensitivity_options(sensitivity: Dict[str, Any]) -> SensitivityOptions:
    options = {key: value for key, value in (sensitivity or {}).items() if key != 'target_moics'}
    return SensitivityOptions(**options)


def parse_forecast_scenarios(forecast: Dict[str, Any]) -> Optional[Tuple[ForecastScenario, ...]]:
    """Builds the scenarios of a 'forecast' block; None when the block lists none."""
    entries = (forecast or {}).get('scenarios')
    if not entries:
        return None
    return tuple(
        ForecastScenario(
            scenario_id=str(entry['id']),
            name=entry.get('name', entry['id']),
            description=entry.get('description', ''),
            probability=float(entry['probability']),
            macro=MacroeconomicFactors(**(entry.get('macro') or {})),
            sector_trends=tuple(SectorTrend(**trend) for trend in entry.get('sector_trends', [])),
        )
        for entry in entries
    )


def load_parameters(config_path: str, schema_path: str = DEFAULT_SCHEMA_PATH) -> PortfolioConfig:
    """Loads, validates (schema and logic), and processes a portfolio configuration from a YAML file."""
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    # --- 1. Schema Validation ---
    try:
        with open(schema_path, 'r', encoding='utf-8') as f:
            schema = json.load(f)
    except FileNotFoundError:
        logging.warning(f"Schema file not found at {schema_path}. Skipping schema validation.")
    else:
        try:
            jsonschema.validate(instance=config, schema=schema)
        except jsonschema.ValidationError:
            logging.error(f"Configuration file {config_path} failed validation against {schema_path}.")
            raise
        logging.info("Configuration file successfully validated against schema.")

    # --- 2. Parse Data into Dataclasses ---
    investments = tuple(parse_investment(entry) for entry in config['investments'])
    simulation = parse_simulation_config(config['simulation'], config.get('follow_on_strategy'))
    sensitivity_config = config.get('sensitivity') or {}
    sensitivity = parse_sensitivity_options(sensitivity_config)
    targets = sensitivity_config.get('target_moics')
    scenario = config.get('scenario') or {}
    forecast_scenarios = parse_forecast_scenarios(config.get('forecast'))

    # --- 3. Logical Validation ---
    validate_inputs(list(investments), simulation)
    validate_sensitivity_options(sensitivity)
    if targets is not None and any(t <= 0 for t in targets):
        raise ValueError(f"Logical Error: target_moics must be positive. Got: {targets}")
    if forecast_scenarios is not None:
        validate_scenarios(forecast_scenarios)
    logging.info("Configuration file successfully passed logical validation.")

    params = PortfolioConfig(
        name=scenario.get('name', os.path.splitext(os.path.basename(config_path))[0]),
        description=scenario.get('description', ''),
        investments=investments,
        simulation=simulation,
        sensitivity=sensitivity,
        target_moics=tuple(float(t) for t in targets) if targets is not None else None,
        seed=config.get('seed'),
        forecast_scenarios=forecast_scenarios,
    )
    logging.info(f"Loaded portfolio '{params.name}' with {len(investments)} investments.")
    return params
