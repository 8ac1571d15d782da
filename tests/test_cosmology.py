"""Expansion history and epoch state machine tests.

Covers:
- a(t) as a pure function of time (jump/update agreement, reversibility).
- Clamping at t = 0 and validation of every committed state.
- Friedmann-derived distances against textbook LCDM values.
- Parameter updates, presets and the closed-universe turnaround.
"""

from __future__ import annotations

import logging
import math

import numpy as np
import pytest

from constants import AGE_UNIVERSE_S, G_SI, RHO_CRIT_0, T_CMB_0
from cosmology import (
    COSMOLOGY_PRESETS,
    Cosmology,
    CosmologyParams,
    FriedmannTable,
    inflation_scale_factor,
)
from epochs import EPOCHS, FUTURE_SCENARIOS


def _mid_epoch_time(index: int) -> float:
    epoch = EPOCHS[index]
    if index == 0:
        return epoch.time_end / 2
    if math.isinf(epoch.time_end):
        return epoch.time_start * 2
    return math.sqrt(epoch.time_start * epoch.time_end)


def test_scale_factor_is_monotonic_in_time() -> None:
    cosmology = Cosmology()
    times = np.logspace(-44, 19, 400)
    a = np.array([cosmology.scale_factor_at(t) for t in times])

    assert np.isfinite(a).all()
    assert (a > 0).all()
    assert (np.diff(a) >= 0).all()


def test_present_day_scale_factor_is_near_one() -> None:
    cosmology = Cosmology()
    state = cosmology.jump_to_time(AGE_UNIVERSE_S)

    assert 0.9 < state.scale_factor < 1.1
    assert abs(state.redshift) < 0.15
    assert state.epoch.id == "near_future" or state.epoch.id == "present"


def test_inflation_grows_by_at_most_a_million() -> None:
    assert inflation_scale_factor(0.0) == pytest.approx(1e-30)
    assert inflation_scale_factor(1.0) == pytest.approx(1e-24)

    cosmology = Cosmology()
    assert cosmology.scale_factor_at(1e-32) == pytest.approx(1e-24)


@pytest.mark.parametrize("index", range(len(EPOCHS)))
def test_jump_agrees_with_summed_updates(index: int) -> None:
    target = _mid_epoch_time(index)

    jumped = Cosmology()
    jumped.jump_to_time(target)

    stepped = Cosmology()
    for _ in range(10):
        stepped.update(target / 10)

    assert jumped.epoch_index == index
    assert stepped.epoch_index == index
    assert stepped.current_epoch.id == jumped.current_epoch.id
    assert stepped.scale_factor == pytest.approx(jumped.scale_factor, rel=1e-9)


def test_forward_then_reverse_returns_same_state() -> None:
    cosmology = Cosmology()
    cosmology.jump_to_time(1e15)
    before = cosmology.get_state()

    cosmology.update(1e14)
    assert cosmology.time == 1.1e15
    cosmology.update(1e14, reversed=True)

    after = cosmology.get_state()
    assert after.time == before.time
    assert after.scale_factor == before.scale_factor
    assert after.redshift == before.redshift
    assert after.temperature == before.temperature
    assert after.epoch.id == before.epoch.id


def test_reversed_step_uses_magnitude_of_dt() -> None:
    a = Cosmology()
    b = Cosmology()
    a.jump_to_time(5e14)
    b.jump_to_time(5e14)

    a.update(1e14, reversed=True)
    b.update(-1e14, reversed=True)
    assert a.time == b.time == 4e14


def test_reverse_clamps_at_time_zero() -> None:
    cosmology = Cosmology()
    cosmology.update(1e-40)
    state = cosmology.update(10.0, reversed=True)

    assert state.time == 0.0
    assert state.epoch.id == "planck"
    assert cosmology.epoch_index == 0


def test_non_finite_inputs_keep_previous_state() -> None:
    cosmology = Cosmology()
    cosmology.jump_to_time(1e12)

    cosmology.update(float("nan"))
    cosmology.update(float("inf"))
    cosmology.jump_to_time(float("nan"))
    assert cosmology.time == 1e12


def test_derived_quantities_follow_scale_factor() -> None:
    cosmology = Cosmology()
    for t in (1e-30, 1.0, 1e13, 1e17, AGE_UNIVERSE_S):
        state = cosmology.jump_to_time(t)
        assert state.redshift == 1.0 / state.scale_factor - 1.0
        assert state.temperature == pytest.approx(max(T_CMB_0, T_CMB_0 / state.scale_factor))
        assert math.isfinite(state.hubble_rate) and state.hubble_rate > 0


def test_epoch_transition_is_flagged_and_logged(caplog) -> None:
    caplog.set_level(logging.INFO, logger="CosmoSim")
    cosmology = Cosmology()

    state = cosmology.update(1e-40)
    assert state.epoch_changed
    assert state.epoch.id == "gut"
    assert "EPOCH TRANSITION: Grand Unification Epoch" in caplog.text

    state = cosmology.update(1e-40)
    assert not state.epoch_changed
    assert state.next_epoch.id == "inflation_begin"


def test_epoch_progress_and_last_epoch() -> None:
    cosmology = Cosmology()
    epoch = EPOCHS.by_id("cosmic_web")
    cosmology.jump_to_time(epoch.time_start + 0.25 * epoch.duration)
    assert cosmology.epoch_progress == pytest.approx(0.25)

    cosmology.jump_to_time(1e18)
    assert cosmology.current_epoch.id == "near_future"
    assert cosmology.next_epoch is None
    assert cosmology.epoch_progress == 0.0


def test_far_future_extrapolation_stays_finite() -> None:
    cosmology = Cosmology()
    state = cosmology.jump_to_time(1e30)

    assert math.isfinite(state.scale_factor)
    assert state.scale_factor > 1e4
    assert state.temperature == T_CMB_0


def test_jump_to_epoch(caplog) -> None:
    cosmology = Cosmology()
    index = EPOCHS.index_of("first_galaxies")
    state = cosmology.jump_to_epoch(index)
    assert state.epoch.id == "first_galaxies"
    assert state.time == EPOCHS[index].time_start

    caplog.set_level(logging.WARNING, logger="CosmoSim")
    state = cosmology.jump_to_epoch(len(EPOCHS) + 5)
    assert state.epoch.id == "first_galaxies"
    assert "out of range" in caplog.text


def test_history_keeps_last_hundred_entries() -> None:
    cosmology = Cosmology()
    assert len(cosmology.scale_history) == Cosmology.HISTORY_LENGTH

    for _ in range(150):
        cosmology.update(1e10)

    assert len(cosmology.scale_history) == 100
    assert len(cosmology.temp_history) == 100
    assert cosmology.scale_history[-1] == pytest.approx(math.log10(cosmology.scale_factor))


def test_reset_returns_to_big_bang() -> None:
    cosmology = Cosmology()
    cosmology.jump_to_time(1e16)
    cosmology.reset()

    assert cosmology.time == 0.0
    assert cosmology.epoch_index == 0
    assert cosmology.scale_factor == pytest.approx(1e-30)


def test_hubble_parameter() -> None:
    cosmology = Cosmology()
    p = cosmology.params

    assert cosmology.hubble_parameter(0.0) == pytest.approx(p.H0, rel=1e-3)
    assert cosmology.hubble_parameter(1.0) > cosmology.hubble_parameter(0.0)
    assert cosmology.hubble_parameter(1e11) == pytest.approx(p.H0 * math.sqrt(p.Omega_r) * 1e10)
    assert cosmology.hubble_parameter(float("nan")) == pytest.approx(p.H0 * math.sqrt(p.Omega_r) * 1e10)
    assert cosmology.hubble_parameter_si(0.0) == pytest.approx(p.H0_SI, rel=1e-3)


def test_densities() -> None:
    cosmology = Cosmology()
    H = cosmology.hubble_parameter_si(0.5)

    assert cosmology.get_critical_density(0.5) == pytest.approx(3 * H * H / (8 * math.pi * G_SI))
    assert cosmology.get_matter_density(2.0) == pytest.approx(cosmology.params.Omega_m * RHO_CRIT_0 * 27)
    assert cosmology.get_cmb_temperature(1089.0) == pytest.approx(T_CMB_0 * 1090)


def test_distances_match_lcdm() -> None:
    cosmology = Cosmology()

    assert cosmology.comoving_distance(0.0) == 0.0
    assert 9e25 < cosmology.comoving_distance(1.0) < 1.2e26

    assert cosmology.lookback_time(0.0) == 0.0
    lookback_1 = cosmology.lookback_time(1.0)
    assert 2.2e17 < lookback_1 < 2.8e17
    assert cosmology.lookback_time(3.0) > lookback_1
    assert cosmology.universe_age(0.0) == AGE_UNIVERSE_S


def test_expansion_state_labels() -> None:
    cosmology = Cosmology()
    assert cosmology.get_expansion_state() == "Inflation"
    cosmology.jump_to_time(1e3)
    assert cosmology.get_expansion_state() == "Radiation-dominated"
    cosmology.jump_to_time(1e16)
    assert cosmology.get_expansion_state() == "Decelerating"
    cosmology.jump_to_time(4e17)
    assert cosmology.get_expansion_state() == "Accelerating"
    assert cosmology.get_jeans_length() > 0
    assert cosmology.get_expansion_rate() == pytest.approx(cosmology.hubble_parameter_si(cosmology.redshift))


def test_invalid_parameters_are_rejected() -> None:
    with pytest.raises(ValueError):
        Cosmology(CosmologyParams(H0=-1.0))
    with pytest.raises(ValueError):
        Cosmology(CosmologyParams(w=float("nan")))

    cosmology = Cosmology()
    with pytest.raises(ValueError):
        cosmology.set_parameters(hubble=70.0)
    with pytest.raises(ValueError):
        cosmology.set_parameters(H0=float("inf"))
    assert cosmology.params.H0 == 67.4


def test_set_parameters_rebuilds_history() -> None:
    cosmology = Cosmology()
    cosmology.jump_to_time(1e17)
    before = cosmology.scale_factor

    params = cosmology.set_parameters(H0=74.0)
    assert params.H0 == 74.0
    assert cosmology.scale_factor == cosmology.scale_factor_at(1e17)
    assert cosmology.scale_factor > before


def test_presets() -> None:
    cosmology = Cosmology()
    params = cosmology.apply_preset("scdm")
    assert params.name == "SCDM (Einstein-de Sitter)"
    assert params.Omega_Lambda == 0.0

    with pytest.raises(ValueError):
        cosmology.apply_preset("steady_state")


def test_future_scenarios_set_dark_energy_w() -> None:
    rates = {}
    for scenario_id, scenario in FUTURE_SCENARIOS.items():
        cosmology = Cosmology()
        cosmology.jump_to_time(AGE_UNIVERSE_S)
        params = cosmology.apply_future_scenario(scenario_id)
        assert params.w == scenario.w
        rates[scenario_id] = cosmology.hubble_parameter(1.0)

    # Omega_Lambda (1+z)^(3(1+w)): stiffer dark energy raises H at z > 0
    assert rates["crunch"] > rates["freeze"] > rates["rip"]
    assert rates["bounce"] == rates["crunch"]

    with pytest.raises(ValueError):
        Cosmology().apply_future_scenario("heat_death")


def test_closed_universe_holds_at_turnaround() -> None:
    params = COSMOLOGY_PRESETS["closed_universe"]
    table = FriedmannTable(params)
    assert table.turnaround

    cosmology = Cosmology(params)
    late = cosmology.scale_factor_at(table.t_max * 10)
    assert math.isfinite(late)
    assert late == cosmology.scale_factor_at(table.t_max * 100)
    assert late == pytest.approx(table.a[-1])


def test_open_universes_extend_past_table() -> None:
    table = FriedmannTable(COSMOLOGY_PRESETS["lambda_cdm"])
    assert not table.turnaround
    assert table.scale_factor(table.t_max * 2) > table.a[-1]
    assert table.time_at(1.0) == pytest.approx(AGE_UNIVERSE_S, rel=0.05)
