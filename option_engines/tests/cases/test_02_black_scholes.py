import math
from typing import Tuple, Dict

import pytest

from .common import (
    OptionContract,
    BlackScholesParams,
    BlackScholesEngine,
    BracketExhaustedError,
    finite_difference_greeks,
)
from ...backend.solvers.black_scholes import inflection_volatility


def check_implied_vol_reference() -> Tuple[bool, str, Dict]:
    """
    Index option quote: S=5401.25, K=5470, 7.3 days, r=-4.5%, call at 54.0.
    Implied vol is about 0.279 and repricing at it recovers the quote.
    """
    contract = OptionContract.from_days(S=5401.25, K=5470.0, r=-0.045, days=7.3)
    engine = BlackScholesEngine(contract)

    results = {}
    for method in ('bisection', 'newton', 'fast'):
        solver = getattr(engine, f'implied_volatility_{method}')
        iv = solver(54.0, True)
        engine.volatility = iv
        results[method] = (iv, engine.calculate_call())

    checks = {m: abs(iv - 0.279) < 0.005 and abs(price - 54.0) < 0.005
              for m, (iv, price) in results.items()}
    passed = all(checks.values())
    message = ", ".join(f"{m}: σ={iv:.4f} → {p:.4f}" for m, (iv, p) in results.items())
    return passed, message, {'results': results, 'checks': checks}


def check_closed_form_greeks() -> Tuple[bool, str, Dict]:
    """Signs and the textbook relations between call and put Greeks."""
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 90)
    engine = BlackScholesEngine(contract, volatility=0.25)
    g = engine.calculate_all()

    checks = {
        'delta_call in (0, 1)': 0.0 < g.delta_call < 1.0,
        'delta_put = delta_call - 1': abs(g.delta_put - (g.delta_call - 1.0)) < 1e-12,
        'gamma > 0': g.gamma > 0,
        'vega > 0': g.vega_call > 0 and g.vega_call == g.vega_put,
        'theta_call < 0': g.theta_call < 0,
        'theta_put > theta_call': g.theta_put > g.theta_call,
        'hull-white = delta': g.hull_white_delta_call == g.delta_call,
        'parity': abs(engine.call_value - engine.put_value
                      - (100.0 - 100.0 * contract.discount_factor)) < 1e-10,
    }
    passed = all(checks.values())
    message = "All relations hold" if passed else f"Failed: {[k for k, v in checks.items() if not v]}"
    return passed, message, {**g.to_dict(), 'checks': checks}


def check_finite_difference_agreement() -> Tuple[bool, str, Dict]:
    """Generic bump-and-reprice Greeks reproduce the closed forms."""
    contract = OptionContract.from_days(100.0, 105.0, 0.03, 120)
    engine = BlackScholesEngine(contract, volatility=0.3)
    exact = engine.calculate_all()
    fd = finite_difference_greeks(engine, contract, BlackScholesParams(0.3))

    rel = {
        'gamma': abs(fd.gamma - exact.gamma) / exact.gamma,
        'vega': abs(fd.vega_call - exact.vega_call) / exact.vega_call,
        'theta': abs(fd.theta_call - exact.theta_call) / abs(exact.theta_call),
        'delta': abs(fd.delta_call - exact.delta_call) / exact.delta_call,
    }
    passed = all(v < 0.02 for v in rel.values())
    message = ", ".join(f"{k}={v * 100:.3f}%" for k, v in rel.items())
    return passed, message, rel


def test_implied_vol_reference():
    passed, message, _ = check_implied_vol_reference()
    assert passed, message


def test_closed_form_greeks():
    passed, message, _ = check_closed_form_greeks()
    assert passed, message


def test_finite_difference_agreement():
    passed, message, _ = check_finite_difference_agreement()
    assert passed, message


@pytest.mark.parametrize('is_call', [True, False])
@pytest.mark.parametrize('strike', [80.0, 100.0, 125.0])
def test_implied_vol_round_trip(is_call, strike):
    contract = OptionContract.from_days(100.0, strike, 0.02, 60)
    engine = BlackScholesEngine(contract, volatility=0.35)
    values = engine.calculate_price()
    target = values.call if is_call else values.put

    solver = BlackScholesEngine(contract)
    assert solver.implied_volatility_fast(target, is_call) == pytest.approx(0.35, abs=0.01)
    assert solver.implied_volatility_newton(target, is_call) == pytest.approx(0.35, abs=0.01)
    assert solver.implied_volatility_bisection(target, is_call) == pytest.approx(0.35, abs=0.01)


@pytest.mark.parametrize('method', ['newton', 'fast', 'bisection'])
@pytest.mark.parametrize('is_call', [True, False])
@pytest.mark.parametrize('strike', [60.0, 80.0, 100.0, 120.0, 150.0])
def test_implied_vol_reprices_deep_strikes(method, is_call, strike):
    contract = OptionContract.from_days(100.0, strike, 0.05, 90)
    values = BlackScholesEngine(contract, volatility=0.3).calculate_price()
    target = values.call if is_call else values.put

    solver = BlackScholesEngine(contract)
    iv = getattr(solver, f'implied_volatility_{method}')(target, is_call)
    assert 0.0 < iv <= 5.0

    repriced = BlackScholesEngine(contract, volatility=iv).calculate_price()
    assert (repriced.call if is_call else repriced.put) == pytest.approx(target, abs=solver.iv_accuracy)
    assert solver.iteration_count < 100


def test_newton_starts_from_inflection_far_from_the_money():
    contract = OptionContract.from_days(100.0, 150.0, 0.05, 90)
    assert inflection_volatility(contract) == pytest.approx(
        math.sqrt(2.0 * abs(math.log(100.0 / 150.0) + 0.05 * contract.T) / contract.T))

    target = BlackScholesEngine(contract, volatility=0.3).calculate_call()
    assert BlackScholesEngine(contract).implied_volatility_newton(target, True) == pytest.approx(0.3, abs=0.02)


def test_newton_caller_start_with_vanishing_vega_is_returned():
    contract = OptionContract.from_days(100.0, 150.0, 0.05, 90)
    solver = BlackScholesEngine(contract)
    target = BlackScholesEngine(contract, volatility=0.3).calculate_call()
    assert solver.implied_volatility_newton(target, True, initial_guess=0.01) == 0.01
    assert solver.iteration_count == 0


def test_newton_near_the_money():
    contract = OptionContract.from_days(100.0, 102.0, 0.01, 45)
    engine = BlackScholesEngine(contract, volatility=0.22)
    target = engine.calculate_put()
    assert BlackScholesEngine(contract).implied_volatility_newton(target, False) == pytest.approx(0.22, abs=0.005)


def test_bisection_bracket_exhausted():
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 30)
    with pytest.raises(BracketExhaustedError):
        # no volatility makes a call worth more than the spot
        BlackScholesEngine(contract).implied_volatility_bisection(150.0, True)


def test_hull_white_delta_clamped():
    contract = OptionContract.from_days(100.0, 90.0, 0.05, 30)
    engine = BlackScholesEngine(contract, volatility=0.2, spot_vol_slope=5.0)
    g = engine.calculate_all()
    assert g.hull_white_delta_call == 1.0
    assert -1.0 <= g.hull_white_delta_put <= 0.0


def test_charm_and_vanna_signs():
    # OTM call: delta decays toward zero as expiry approaches
    contract = OptionContract.from_days(100.0, 110.0, 0.0, 60)
    g = BlackScholesEngine(contract, volatility=0.2).calculate_all()
    assert g.charm_call < 0
    assert g.vanna_call > 0
    assert math.isclose(g.vanna_call, g.vanna_put)
