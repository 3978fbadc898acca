from typing import Tuple, Dict

import numpy as np
import pytest

from .common import (
    OptionContract,
    HestonParams,
    BatesParams,
    BatesEngine,
    MonteCarloSimulator,
    CancellationToken,
    OperationCancelledError,
    atm_contract,
    parity_error,
    get_default_bates_params,
)
from ...backend.solvers.bates import cos_call_delta, validate_bates_params


def check_cos_delta_matches_finite_difference() -> Tuple[bool, str, Dict]:
    """
    COS-series delta against bump-and-reprice on the Fourier price.
    Both come from the same characteristic function, so they must agree.
    """
    params = get_default_bates_params()
    cos_engine = BatesEngine(use_cos_delta=True)
    fd_engine = BatesEngine(use_cos_delta=False)

    diffs = {}
    for K in (90.0, 95.0, 100.0, 105.0, 110.0):
        for days in (30, 180):
            contract = OptionContract.from_days(100.0, K, 0.05, days)
            cos_delta, _ = cos_engine.delta(contract, params)
            fd_delta, _ = fd_engine.delta(contract, params)
            diffs[(K, days)] = abs(cos_delta - fd_delta)

    worst = max(diffs.values())
    passed = worst < 0.03
    message = f"Max |Δ_COS - Δ_FD| = {worst:.5f}"
    return passed, message, {'diffs': diffs}


def check_mc_matches_fourier() -> Tuple[bool, str, Dict]:
    """Seeded Monte Carlo lands near the Fourier price."""
    contract = atm_contract(days=10)
    params = get_default_bates_params()
    fourier = BatesEngine().price(contract, params)
    mc = BatesEngine(use_monte_carlo=True, mc_paths=2000, mc_steps=20).price(contract, params)

    rel = abs(mc.call - fourier.call) / fourier.call
    passed = rel < 0.40
    message = f"Fourier={fourier.call:.4f}, MC={mc.call:.4f}, Diff={rel * 100:.1f}%"
    return passed, message, {'fourier': fourier.call, 'mc': mc.call, 'rel_error': rel}


def check_mc_variance_positivity() -> Tuple[bool, str, Dict]:
    """
    Euler full truncation keeps every path finite and positive even when
    the Feller condition fails badly.
    """
    params = HestonParams(V0=0.04, theta=0.04, kappa=1.0, sigma=0.9, rho=-0.7)
    mc = MonteCarloSimulator(params, seed=5)
    terminal = mc.simulate_terminal(S=100.0, r=0.05, T=1.0, n_steps=100, n_paths=2000)

    min_spot = float(np.min(terminal))
    passed = bool(np.all(np.isfinite(terminal))) and min_spot > 0
    message = f"Min terminal spot = {min_spot:.6f}"
    return passed, message, {'min_spot': min_spot, 'feller_ratio': params.feller_ratio}


def test_cos_delta_matches_finite_difference():
    passed, message, _ = check_cos_delta_matches_finite_difference()
    assert passed, message


def test_mc_matches_fourier():
    passed, message, _ = check_mc_matches_fourier()
    assert passed, message


def test_mc_variance_positivity():
    passed, message, _ = check_mc_variance_positivity()
    assert passed, message


def test_mc_seed_reproducible():
    params = get_default_bates_params()
    a = MonteCarloSimulator(params.heston, params.jumps, seed=11).price(100.0, 100.0, 0.05, 0.25, 20, 500)
    b = MonteCarloSimulator(params.heston, params.jumps, seed=11).price(100.0, 100.0, 0.05, 0.25, 20, 500)
    assert a == b


def test_mc_reports_standard_errors():
    params = get_default_bates_params()
    result = MonteCarloSimulator(params.heston, params.jumps, seed=2).price_european(
        100.0, 100.0, 0.05, 0.25, 20, 1000)
    assert set(result) == {'call', 'put', 'call_stderr', 'put_stderr'}
    assert 0 < result['call_stderr'] < result['call']


def test_mc_cancellation():
    token = CancellationToken()
    token.cancel()
    engine = BatesEngine(use_monte_carlo=True, mc_paths=100, mc_steps=10, token=token)
    with pytest.raises(OperationCancelledError):
        engine.price(atm_contract(), get_default_bates_params())


def test_mc_price_respects_parity_repair():
    contract = atm_contract(days=60)
    engine = BatesEngine(use_monte_carlo=True, mc_paths=1000, mc_steps=20)
    assert parity_error(contract, engine.price(contract, get_default_bates_params())) < 1e-3


def test_cos_delta_uses_minimum_terms():
    contract = atm_contract(days=60)
    params = validate_bates_params(get_default_bates_params())
    few = cos_call_delta(contract, params, terms=4)
    minimum = cos_call_delta(contract, params, terms=32)
    assert few == minimum


def test_bates_calculate_all_sets_values():
    engine = BatesEngine(atm_contract(days=45), use_cos_delta=True)
    greeks = engine.calculate_all()
    assert engine.call_value > 0 and engine.put_value > 0
    assert 0.0 <= greeks.delta_call <= 1.0
    assert greeks.gamma > 0


def test_invalid_bates_inputs_are_clamped():
    params = get_default_bates_params()
    wild = validate_bates_params(BatesParams(
        heston=HestonParams(V0=0.0, theta=0.0, kappa=0.0, sigma=0.0, rho=1.0),
        jumps=params.jumps,
    ))
    assert wild.heston.rho == pytest.approx(0.999)
    values = BatesEngine().price(atm_contract(), wild)
    assert values.is_finite()
