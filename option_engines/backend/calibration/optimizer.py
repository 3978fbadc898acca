"""
Grid-Search Calibration to Market Put Prices

═══════════════════════════════════════════════════════════════════════════════
1. CALIBRATION OBJECTIVE
═══════════════════════════════════════════════════════════════════════════════

   Find parameters θ* that best fit observed put prices:

   θ* = argmin Σᵢ [P_model^i(θ) - P_market^i]²

   Each option carries its own strike and expiry (in calendar days); spot
   and rate are taken from the engine's contract.

═══════════════════════════════════════════════════════════════════════════════
2. HESTON: COARSE-TO-FINE GRID
═══════════════════════════════════════════════════════════════════════════════

   Axes (volatility axes quoted as volatilities):

     long-term vol  [0.03, 0.5]      κ  [0.1, 100]     ξ  [0.1, 2.0]
     ρ              [-1, 1]          current vol  [0.03, 0.4]

   Each axis starts with step (end - start)/5, so the first pass is a 6⁵
   cartesian product. Then:

     SEARCHING  evaluate the product; a point replaces the best only if its
                error is strictly lower (first best wins on ties)
     NARROWING  no improvement → CONVERGED. Otherwise every axis becomes
                [best - step, best + step] (floored / clipped), step halves;
                a step that would drop below 0.01 is pinned at 0.01
     CONVERGED  no axis could be narrowed further, or a pass found nothing
                better than the previous best

═══════════════════════════════════════════════════════════════════════════════
3. VARIANCE GAMMA: SINGLE PASS
═══════════════════════════════════════════════════════════════════════════════

   σ ∈ [0.05, 0.40] step 0.01,  ν ∈ [0.1, 5.0] step 0.1,
   θ ∈ [-0.08, 0.30] step 0.01,  one cartesian product, strict <.

═══════════════════════════════════════════════════════════════════════════════
4. OPTIONAL LOCAL REFINEMENT
═══════════════════════════════════════════════════════════════════════════════

   The grid optimum can be polished with a bounded L-BFGS-B search
   (scipy.optimize.minimize) inside the final grid cell. The refined point is
   kept only if it strictly lowers the objective.

═══════════════════════════════════════════════════════════════════════════════
"""

import itertools
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from ..core.errors import CancellationToken, check_cancelled
from ..core.parameters import (
    OptionContract,
    HestonParams,
    VarianceGammaParams,
    get_heston_calibration_grid,
)

logger = logging.getLogger(__name__)

MIN_STEP = 0.01

HESTON_AXIS_ORDER = ('long_term_vol', 'kappa', 'sigma', 'rho', 'current_vol')
HESTON_AXIS_FLOORS = {
    'long_term_vol': 0.01,
    'kappa': 0.001,
    'sigma': 0.01,
    'rho': -1.0,
    'current_vol': 0.01,
}
HESTON_AXIS_CEILINGS = {'rho': 1.0}

VG_GRID = {
    'sigma': (0.05, 0.40, 0.01),
    'nu': (0.1, 5.0, 0.1),
    'theta': (-0.08, 0.30, 0.01),
}


class CalibrationState(Enum):
    SEARCHING = 'searching'
    NARROWING = 'narrowing'
    CONVERGED = 'converged'


@dataclass
class MarketOption:
    """
    Container for market option data.
    """
    strike: float           # Strike price K
    expiry_days: float      # Calendar days to expiry
    price: float            # Market price (mid)
    option_type: str = 'put'
    bid: Optional[float] = None
    ask: Optional[float] = None


@dataclass
class CalibrationResult:
    params: object
    objective: float
    iterations: int
    state: CalibrationState
    history: List[Dict] = field(default_factory=list)
    evaluations: int = 0

    def to_dict(self) -> Dict:
        return {
            'params': self.params.to_dict(),
            'objective': self.objective,
            'iterations': self.iterations,
            'state': self.state.value,
            'evaluations': self.evaluations,
            'history': self.history,
        }


def float_range(start: float, end: float, step: float) -> List[float]:
    """
    start, start+step, ... ≤ end.

    Points are computed as start + i·step with a small tolerance on the end,
    so accumulated rounding never drops or adds the last node. No point
    exceeds ``end``.
    """
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    if end < start:
        return []
    n = int(math.floor((end - start) / step + 1e-9))
    return [min(end, start + i * step) for i in range(n + 1)]


@dataclass(frozen=True)
class AxisRange:
    start: float
    end: float
    step: float
    floor: float
    ceiling: Optional[float] = None

    def values(self) -> List[float]:
        """Grid nodes, clamped to [floor, ceiling]."""
        values = [max(self.floor, v) for v in float_range(self.start, self.end, self.step)]
        if self.ceiling is not None:
            values = [min(self.ceiling, v) for v in values]
        return values

    def narrow(self, best: float) -> Tuple['AxisRange', bool]:
        """Range of ±step around ``best`` with the step halved."""
        start = max(self.floor, best - self.step)
        end = best + self.step
        if self.ceiling is not None:
            end = min(self.ceiling, end)
        step = self.step / 2.0
        changed = step >= MIN_STEP
        if not changed:
            step = MIN_STEP
        return AxisRange(start, end, step, self.floor, self.ceiling), changed


def grid_search(
    objective: Callable[[Tuple[float, ...]], float],
    axes: Sequence[Sequence[float]],
    best_error: float = math.inf,
    best_point: Optional[Tuple[float, ...]] = None,
    token: Optional[CancellationToken] = None,
) -> Tuple[float, Optional[Tuple[float, ...]], bool, int]:
    """
    Evaluate the cartesian product of ``axes`` and keep the minimum.

    A point replaces the incumbent only on a strictly lower error, so among
    equal errors the earliest point in product order wins.

    Returns:
        (best_error, best_point, improved, evaluations)
    """
    improved = False
    evaluations = 0
    outer = None
    for point in itertools.product(*axes):
        # one cancellation check per outermost-axis value
        if point[0] != outer:
            outer = point[0]
            check_cancelled(token)
        error = objective(point)
        evaluations += 1
        if error < best_error:
            best_error = error
            best_point = point
            improved = True
    return best_error, best_point, improved, evaluations


def put_sse(pricer, contract: OptionContract, params,
            market_puts: Sequence[float], strikes: Sequence[float],
            expiries_days: Sequence[float]) -> float:
    """Sum of squared put pricing errors."""
    total = 0.0
    for market, strike, days in zip(market_puts, strikes, expiries_days):
        option = OptionContract.from_days(contract.S, strike, contract.r, days)
        error = pricer.price(option, params).put - market
        total += error * error
    return total


def _check_lengths(market_puts, strikes, expiries_days) -> None:
    if not (len(market_puts) == len(strikes) == len(expiries_days)):
        raise ValueError(
            f"Arrays must have the same length "
            f"(prices={len(market_puts)}, strikes={len(strikes)}, "
            f"expiries={len(expiries_days)})"
        )


def _heston_from_point(point: Tuple[float, ...]) -> HestonParams:
    long_term_vol, kappa, sigma, rho, current_vol = point
    return HestonParams.from_volatilities(
        current_vol=current_vol,
        long_term_vol=long_term_vol,
        kappa=kappa,
        sigma=sigma,
        rho=rho,
    )


class HestonGridCalibrator:
    """
    Coarse-to-fine grid search for the five Heston parameters.

    The pricer is any object with ``price(contract, params)``; a HestonEngine
    passes itself so its model type and integration method apply.
    """

    def __init__(
        self,
        pricer,
        contract: OptionContract,
        grid: Optional[Dict[str, Tuple[float, float]]] = None,
        verbose: bool = False,
    ):
        self.pricer = pricer
        self.contract = contract
        self.grid = {**get_heston_calibration_grid(), **(grid or {})}
        self.verbose = verbose
        self.state = CalibrationState.SEARCHING
        self.result: Optional[CalibrationResult] = None

    def _initial_axes(self) -> List[AxisRange]:
        axes = []
        for name in HESTON_AXIS_ORDER:
            start, end = self.grid[name]
            axes.append(AxisRange(
                start=start,
                end=end,
                step=(end - start) / 5.0 if end > start else MIN_STEP,
                floor=HESTON_AXIS_FLOORS[name],
                ceiling=HESTON_AXIS_CEILINGS.get(name),
            ))
        return axes

    def calibrate(
        self,
        market_puts: Sequence[float],
        strikes: Sequence[float],
        expiries_days: Sequence[float],
        initial: Optional[HestonParams] = None,
        token: Optional[CancellationToken] = None,
        max_passes: Optional[int] = None,
        refine: bool = False,
    ) -> CalibrationResult:
        """
        Run the search.

        Args:
            market_puts: Observed put prices
            strikes: Strike per option
            expiries_days: Calendar days to expiry per option
            initial: Parameters returned if no grid point is finite
            token: Optional cancellation token, checked once per outer value
            max_passes: Stop after this many grid passes
            refine: Polish the grid optimum with L-BFGS-B

        Raises:
            ValueError: the three sequences differ in length
            OperationCancelledError: the token was cancelled
        """
        _check_lengths(market_puts, strikes, expiries_days)

        def objective(point: Tuple[float, ...]) -> float:
            return put_sse(self.pricer, self.contract, _heston_from_point(point),
                           market_puts, strikes, expiries_days)

        axes = self._initial_axes()
        best_error = math.inf
        best_point = None
        evaluations = 0
        passes = 0
        history = []
        self.state = CalibrationState.SEARCHING

        if self.verbose:
            print("Starting Heston grid calibration...")
            print(f"  Options: {len(market_puts)}")

        while self.state is not CalibrationState.CONVERGED:
            if self.state is CalibrationState.SEARCHING:
                best_error, best_point, improved, n = grid_search(
                    objective, [a.values() for a in axes],
                    best_error, best_point, token,
                )
                evaluations += n
                passes += 1
                history.append({'pass': passes, 'objective': best_error,
                                'evaluations': n, 'improved': improved})
                logger.info("Heston calibration pass %d: %d points, SSE=%.6g",
                            passes, n, best_error)
                if self.verbose:
                    print(f"  Pass {passes}: {n} points, SSE = {best_error:.6f}")

                if not improved or (max_passes is not None and passes >= max_passes):
                    self.state = CalibrationState.CONVERGED
                else:
                    self.state = CalibrationState.NARROWING

            elif self.state is CalibrationState.NARROWING:
                narrowed = [axis.narrow(best) for axis, best in zip(axes, best_point)]
                axes = [a for a, _ in narrowed]
                if any(changed for _, changed in narrowed):
                    self.state = CalibrationState.SEARCHING
                else:
                    self.state = CalibrationState.CONVERGED

        if best_point is None:
            params = initial if initial is not None else _heston_from_point(
                tuple(a.start for a in axes))
        else:
            params = _heston_from_point(best_point)

        if refine and best_point is not None:
            params, best_error, n = self._refine(objective, best_point, axes, best_error)
            evaluations += n

        self.result = CalibrationResult(
            params=params,
            objective=best_error,
            iterations=passes,
            state=self.state,
            history=history,
            evaluations=evaluations,
        )

        if self.verbose:
            print(f"\nCalibration complete!")
            print(f"  Final objective: {best_error:.6f}")
            print(f"  Calibrated parameters: {params}")

        return self.result

    def _refine(self, objective, best_point, axes, best_error):
        bounds = [(max(a.floor, b - a.step), b + a.step if a.ceiling is None else min(a.ceiling, b + a.step))
                  for a, b in zip(axes, best_point)]
        outcome = minimize(
            lambda x: objective(tuple(float(v) for v in x)),
            np.array(best_point),
            method='L-BFGS-B',
            bounds=bounds,
            options={'maxiter': 50},
        )
        refined = tuple(float(v) for v in outcome.x)
        if outcome.fun < best_error:
            logger.info("Local refinement lowered SSE %.6g -> %.6g", best_error, outcome.fun)
            return _heston_from_point(refined), float(outcome.fun), int(outcome.nfev)
        return _heston_from_point(best_point), best_error, int(outcome.nfev)


def calibrate_variance_gamma(
    pricer,
    contract: OptionContract,
    market_puts: Sequence[float],
    strikes: Sequence[float],
    expiries_days: Sequence[float],
    initial: VarianceGammaParams,
    grid: Optional[Dict[str, Tuple[float, float, float]]] = None,
    token: Optional[CancellationToken] = None,
) -> CalibrationResult:
    """
    Single-pass VG grid search over (σ, ν, θ).

    Raises:
        ValueError: the three sequences differ in length
    """
    _check_lengths(market_puts, strikes, expiries_days)
    grid = grid or VG_GRID
    axes = [float_range(*grid[name]) for name in ('sigma', 'nu', 'theta')]

    def objective(point: Tuple[float, ...]) -> float:
        sigma, nu, theta = point
        return put_sse(pricer, contract, VarianceGammaParams(sigma=sigma, nu=nu, theta=theta),
                       market_puts, strikes, expiries_days)

    best_error, best_point, _, evaluations = grid_search(objective, axes, token=token)
    logger.info("VG calibration: %d points, SSE=%.6g", evaluations, best_error)

    if best_point is None:
        params = initial
    else:
        params = VarianceGammaParams(sigma=best_point[0], nu=best_point[1], theta=best_point[2])

    return CalibrationResult(
        params=params,
        objective=best_error,
        iterations=1,
        state=CalibrationState.CONVERGED,
        history=[{'pass': 1, 'objective': best_error, 'evaluations': evaluations}],
        evaluations=evaluations,
    )


def compute_fit_metrics(pricer, contract: OptionContract, params,
                        options: Sequence[MarketOption]) -> Dict:
    """
    Calibration fit metrics.

    Returns dictionary with:
    - RMSE: Root mean squared error
    - MAE: Mean absolute error
    - MAPE: Mean absolute percentage error
    - Individual errors per option
    """
    errors = []
    for opt in options:
        option = OptionContract.from_days(contract.S, opt.strike, contract.r, opt.expiry_days)
        values = pricer.price(option, params)
        model_price = values.call if opt.option_type == 'call' else values.put
        errors.append({
            'strike': opt.strike,
            'expiry_days': opt.expiry_days,
            'market_price': opt.price,
            'model_price': model_price,
            'error': model_price - opt.price,
            'pct_error': (model_price - opt.price) / opt.price * 100 if opt.price else 0.0,
        })

    errors_arr = np.array([e['error'] for e in errors])
    pct_errors = np.array([e['pct_error'] for e in errors])

    return {
        'rmse': float(np.sqrt(np.mean(errors_arr ** 2))),
        'mae': float(np.mean(np.abs(errors_arr))),
        'mape': float(np.mean(np.abs(pct_errors))),
        'max_error': float(np.max(np.abs(errors_arr))),
        'individual_errors': errors,
    }


def create_synthetic_market_data(
    pricer,
    contract: OptionContract,
    params,
    strikes: Sequence[float],
    expiries_days: Sequence[float],
    noise_std: float = 0.0,
    seed: Optional[int] = None,
) -> List[MarketOption]:
    """
    Put quotes generated by a model, for testing calibration.

    Args:
        pricer: Any object with ``price(contract, params)``
        contract: Supplies spot and rate
        params: True model parameters
        strikes: Strikes
        expiries_days: Expiries in calendar days
        noise_std: Relative price noise (0 = exact)
        seed: Seed for the noise generator
    """
    rng = np.random.default_rng(seed)
    options = []
    for days in expiries_days:
        for K in strikes:
            option = OptionContract.from_days(contract.S, K, contract.r, days)
            price = pricer.price(option, params).put
            if noise_std > 0:
                price += rng.normal(0, noise_std * price)
                price = max(price, 0.01)
            options.append(MarketOption(strike=K, expiry_days=days, price=price))
    return options
