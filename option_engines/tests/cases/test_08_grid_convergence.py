import math
from typing import Tuple, Dict

import pytest

from .common import (
    OptionContract,
    HestonParams,
    VarianceGammaParams,
    HestonEngine,
    VarianceGammaEngine,
    CancellationToken,
    OperationCancelledError,
)
from ...backend.calibration.optimizer import (
    CalibrationState,
    AxisRange,
    float_range,
    grid_search,
    put_sse,
    compute_fit_metrics,
    create_synthetic_market_data,
    _heston_from_point,
)

STRIKES = [90.0, 100.0, 110.0]
EXPIRIES = [30.0, 60.0, 90.0]

# every axis contains the true value below as a grid node
SMALL_HESTON_GRID = {
    'long_term_vol': (0.1, 0.35),
    'kappa': (1.0, 6.0),
    'sigma': (0.1, 0.6),
    'rho': (-0.9, -0.4),
    'current_vol': (0.1, 0.35),
}
TRUE_HESTON = HestonParams.from_volatilities(current_vol=0.2, long_term_vol=0.2,
                                             kappa=2.0, sigma=0.3, rho=-0.7)


def _heston_quotes():
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 30)
    engine = HestonEngine(contract)
    puts = [engine.price(OptionContract.from_days(100.0, K, 0.05, d), TRUE_HESTON).put
            for K, d in zip(STRIKES, EXPIRIES)]
    return contract, puts


def check_heston_grid_recovery() -> Tuple[bool, str, Dict]:
    """One pass over a grid containing the true point finds it."""
    contract, puts = _heston_quotes()
    engine = HestonEngine(contract)
    result = engine.calibrate_to_market_prices(puts, STRIKES, EXPIRIES,
                                               grid=SMALL_HESTON_GRID, max_passes=1)

    found = result.params
    checks = {
        'converged': result.state is CalibrationState.CONVERGED,
        'one pass': result.iterations == 1,
        'objective ~ 0': result.objective < 1e-8,
        'params replaced': engine.params is found,
        'long_term_vol': abs(found.long_term_volatility - 0.2) < 1e-6,
        'kappa': abs(found.kappa - 2.0) < 1e-6,
        'sigma': abs(found.sigma - 0.3) < 1e-6,
        'rho': abs(found.rho + 0.7) < 1e-6,
        'current_vol': abs(found.current_volatility - 0.2) < 1e-6,
    }
    passed = all(checks.values())
    message = f"SSE = {result.objective:.3e}, {found!r}"
    return passed, message, {'evaluations': result.evaluations, 'checks': checks}


def check_narrowing_improves_objective() -> Tuple[bool, str, Dict]:
    """Later passes never lose ground: the incumbent only moves on a strict improvement."""
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 30)
    target = HestonParams.from_volatilities(0.23, 0.21, 2.5, 0.35, -0.65)
    engine = HestonEngine(contract)
    puts = [engine.price(OptionContract.from_days(100.0, K, 0.05, d), target).put
            for K, d in zip(STRIKES, EXPIRIES)]

    grid = {
        'long_term_vol': (0.15, 0.25),
        'kappa': (2.0, 3.0),
        'sigma': (0.3, 0.4),
        'rho': (-0.7, -0.6),
        'current_vol': (0.2, 0.25),
    }
    result = engine.calibrate_to_market_prices(puts, STRIKES, EXPIRIES, grid=grid, max_passes=3)
    objectives = [h['objective'] for h in result.history]

    monotone = all(b <= a for a, b in zip(objectives, objectives[1:]))
    passed = monotone and result.iterations <= 3 and result.state is CalibrationState.CONVERGED
    message = f"Objectives by pass: {['%.3e' % o for o in objectives]}"
    return passed, message, {'objectives': objectives}


def test_heston_grid_recovery():
    passed, message, _ = check_heston_grid_recovery()
    assert passed, message


def test_narrowing_improves_objective():
    passed, message, _ = check_narrowing_improves_objective()
    assert passed, message


def test_single_point_grid_converges_immediately():
    contract, puts = _heston_quotes()
    grid = {name: (v, v) for name, v in zip(
        ('long_term_vol', 'kappa', 'sigma', 'rho', 'current_vol'), (0.2, 2.0, 0.3, -0.7, 0.2))}
    result = HestonEngine(contract).calibrate_to_market_prices(puts, STRIKES, EXPIRIES, grid=grid)
    assert result.state is CalibrationState.CONVERGED
    assert result.objective < 1e-8


def test_calibration_length_mismatch():
    engine = HestonEngine(OptionContract.from_days(100.0, 100.0, 0.05, 30))
    with pytest.raises(ValueError, match="same length"):
        engine.calibrate_to_market_prices([1.0, 2.0], [100.0], [30.0, 60.0])
    with pytest.raises(ValueError):
        VarianceGammaEngine(engine.contract).calibrate_to_market_prices([1.0], [], [30.0])


def test_calibration_cancellation():
    token = CancellationToken()
    token.cancel()
    contract, puts = _heston_quotes()
    with pytest.raises(OperationCancelledError):
        HestonEngine(contract).calibrate_to_market_prices(puts, STRIKES, EXPIRIES,
                                                          grid=SMALL_HESTON_GRID, token=token)
    with pytest.raises(OperationCancelledError):
        VarianceGammaEngine(contract).calibrate_to_market_prices(puts, STRIKES, EXPIRIES, token=token)


def test_variance_gamma_grid_calibration():
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 30)
    engine = VarianceGammaEngine(contract)
    truth = VarianceGammaParams(sigma=0.2, nu=0.2, theta=-0.1)
    puts = [engine.price(OptionContract.from_days(100.0, K, 0.05, d), truth).put
            for K, d in zip(STRIKES, EXPIRIES)]

    grid = {'sigma': (0.1, 0.3, 0.05), 'nu': (0.1, 0.3, 0.1), 'theta': (-0.2, 0.0, 0.05)}
    result = engine.calibrate_to_market_prices(puts, STRIKES, EXPIRIES, grid=grid)

    assert result.evaluations == 5 * 3 * 5
    assert result.objective < 1e-10
    assert engine.params.sigma == pytest.approx(0.2)
    assert engine.params.nu == pytest.approx(0.2)
    assert engine.params.theta == pytest.approx(-0.1)


def test_grid_search_first_best_wins():
    # flat objective: nothing beats the first point
    best_error, best_point, improved, n = grid_search(lambda p: 1.0, [[1, 2], [3, 4]])
    assert (best_error, best_point, improved, n) == (1.0, (1, 3), True, 4)

    best_error, best_point, _, _ = grid_search(lambda p: abs(p[0] - 2) + abs(p[1] - 4),
                                               [[1, 2, 3], [3, 4, 5]])
    assert best_point == (2, 4) and best_error == 0


def test_float_range_endpoints():
    assert len(float_range(0.05, 0.40, 0.01)) == 36
    assert len(float_range(0.1, 5.0, 0.1)) == 50
    assert len(float_range(-0.08, 0.30, 0.01)) == 39
    assert float_range(1.0, 0.0, 0.1) == []
    with pytest.raises(ValueError):
        float_range(0.0, 1.0, 0.0)


def test_axis_narrowing_halves_step():
    axis = AxisRange(start=0.0, end=1.0, step=0.2, floor=0.1, ceiling=0.9)
    narrowed, changed = axis.narrow(0.8)
    assert changed
    assert narrowed.start == pytest.approx(0.6)
    assert narrowed.end == pytest.approx(0.9)
    assert narrowed.step == pytest.approx(0.1)

    tiny = AxisRange(start=0.0, end=0.1, step=0.015, floor=0.0)
    _, changed = tiny.narrow(0.05)
    assert not changed


def test_fit_metrics_and_synthetic_data():
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 30)
    engine = HestonEngine(contract)
    market = create_synthetic_market_data(engine, contract, TRUE_HESTON, [95.0, 105.0], [30.0])
    assert len(market) == 2

    metrics = compute_fit_metrics(engine, contract, TRUE_HESTON, market)
    assert metrics['rmse'] == pytest.approx(0.0, abs=1e-12)
    assert len(metrics['individual_errors']) == 2

    sse = put_sse(engine, contract, TRUE_HESTON, [m.price for m in market],
                  [m.strike for m in market], [m.expiry_days for m in market])
    assert sse == pytest.approx(0.0, abs=1e-20)


def test_calibration_result_serialises():
    contract, puts = _heston_quotes()
    grid = {name: (v, v) for name, v in zip(
        ('long_term_vol', 'kappa', 'sigma', 'rho', 'current_vol'), (0.2, 2.0, 0.3, -0.7, 0.2))}
    result = HestonEngine(contract).calibrate_to_market_prices(puts, STRIKES, EXPIRIES, grid=grid)
    d = result.to_dict()
    assert d['state'] == 'converged'
    assert set(d['params']) == {'V0', 'theta', 'kappa', 'sigma', 'rho'}
    assert math.isfinite(d['objective'])


def test_axis_values_stay_inside_ceiling():
    # 0.8000000000000002 + 4 * 0.05 rounds to 1.0000000000000002
    axis = AxisRange(start=0.8000000000000002, end=1.0, step=0.05, floor=-1.0, ceiling=1.0)
    values = axis.values()
    assert len(values) == 5
    assert max(values) <= 1.0
    assert _heston_from_point((0.2, 2.0, 0.3, values[-1], 0.2)).rho == pytest.approx(1.0)

    assert max(float_range(0.8000000000000002, 1.0, 0.05)) <= 1.0
    assert min(AxisRange(start=-1.0000000000000002, end=-0.9, step=0.05, floor=-1.0).values()) >= -1.0


def test_positive_correlation_calibration_near_ceiling():
    contract = OptionContract.from_days(100.0, 100.0, 0.05, 30)
    engine = HestonEngine(contract)
    truth = HestonParams.from_volatilities(current_vol=0.2, long_term_vol=0.2,
                                           kappa=2.0, sigma=0.3, rho=0.95)
    puts = [engine.price(OptionContract.from_days(100.0, K, 0.05, d), truth).put
            for K, d in zip(STRIKES, EXPIRIES)]

    grid = {
        'long_term_vol': (0.2, 0.2),
        'kappa': (2.0, 2.0),
        'sigma': (0.3, 0.3),
        'rho': (0.55, 0.95),
        'current_vol': (0.2, 0.2),
    }
    result = engine.calibrate_to_market_prices(puts, STRIKES, EXPIRIES, grid=grid, max_passes=2)

    assert result.state is CalibrationState.CONVERGED
    assert -1.0 <= result.params.rho <= 1.0
    assert result.params.rho == pytest.approx(0.95, abs=0.05)
