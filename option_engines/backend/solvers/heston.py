"""
Heston Stochastic Volatility Engine

═══════════════════════════════════════════════════════════════════════════════
1. PRICING PATHS
═══════════════════════════════════════════════════════════════════════════════

   ModelType.STANDARD_HESTON
     ADAPTIVE / FIXED   Fourier inversion of the characteristic function
                        (see characteristic.py), checked for sanity; an
                        unstable result falls back to the approximation
     APPROXIMATION      Black-Scholes at an effective variance

   ModelType.JUMP_DIFFUSION_HESTON
     Fourier price plus jump, skew and kurtosis premia, parity averaged

   ModelType.VARIANCE_GAMMA
     VG heuristic with ν = ξ and θ = mean jump size

   ModelType.ASYMMETRIC_LAPLACE
     Approximation price with tail premia from κ₁ = 1/(1 - a), κ₂ = 1/(1 + a)

   Every path ends with the fundamental bounds:
     0 ≤ intrinsic ≤ price,   call ≤ S,   put ≤ K·e^{-rT}

═══════════════════════════════════════════════════════════════════════════════
2. EFFECTIVE VARIANCE (APPROXIMATION)
═══════════════════════════════════════════════════════════════════════════════

   m = κT
   v̄ = θ + (v₀ - θ)(1 - e^{-m})/m        (v₀ when m ≤ 0.001)

   v_eff = v̄ + ξ²T/3 + 0.08·ξ²√ξ·T + 0.02·ξ³T

   OTM puts (S/K > 1.01) are scaled by 1 - 0.05·min(1, 2(S/K - 1)) when the
   put-side variance is requested. Floor 1e-4.

═══════════════════════════════════════════════════════════════════════════════
3. CORRELATION ADJUSTMENT
═══════════════════════════════════════════════════════════════════════════════

   A = (ρξ√v₀·T + 0.07·ρξ²T)·(S - K·e^{-rT}) · scaling · damping

   Added to the call and subtracted from the put, so C - P is unchanged.
   |A| ≤ min(5% of max(C, P), 1% of K·T). Moneyness damping keeps deep
   in/out-of-the-money prices close to the base model; any bound violation
   reverts to the unadjusted prices.

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import math
from typing import Callable, Dict, Optional, Sequence, Tuple

from ..core.errors import CancellationToken
from ..core.normal import cumulative_normal
from ..core.parameters import (
    OptionContract,
    HestonParams,
    HestonExtensions,
    IntegrationMethod,
    ModelType,
    DAYS_PER_YEAR,
    get_default_params,
)
from ..core.results import OptionValues, Greeks, Ok, Unstable, PriceOutcome
from ..greeks.calculator import GreeksCalculator
from ..calibration.optimizer import CalibrationResult, HestonGridCalibrator
from .black_scholes import black_scholes_values
from .characteristic import gil_pelaez_probabilities, fourier_values
from .variance_gamma import variance_gamma_values

logger = logging.getLogger(__name__)

OTM_PUT_MONEYNESS = 1.01
OTM_CALL_MONEYNESS = 0.99


# ═══════════════════════════════════════════════════════════════════════════════
# PARAMETER VALIDATION
# ═══════════════════════════════════════════════════════════════════════════════

def validate_and_adjust(params: HestonParams, model_type: ModelType) -> HestonParams:
    """
    Copy of ``params`` safe for Fourier pricing.

    Volatilities, κ and ξ are floored at 0.001 and ρ is clipped to ±0.999.
    Outside the VG variant, a Feller ratio ξ²/(2κθ) above 20 pulls ξ down
    to 4·√(2κθ).
    """
    adjusted = HestonParams.from_volatilities(
        current_vol=max(0.001, params.current_volatility),
        long_term_vol=max(0.001, params.long_term_volatility),
        kappa=max(0.001, params.kappa),
        sigma=max(0.001, params.sigma),
        rho=max(-0.999, min(0.999, params.rho)),
    )
    if model_type is ModelType.VARIANCE_GAMMA:
        return adjusted

    if not adjusted.feller_satisfied:
        two_kappa_theta = 2.0 * adjusted.kappa * adjusted.theta
        if adjusted.sigma ** 2 / two_kappa_theta > 20.0:
            xi = 4.0 * math.sqrt(two_kappa_theta)
            logger.debug("Severe Feller violation: ξ %.4f -> %.4f", adjusted.sigma, xi)
            adjusted = HestonParams(V0=adjusted.V0, theta=adjusted.theta,
                                    kappa=adjusted.kappa, sigma=xi, rho=adjusted.rho)
    return adjusted


def integration_settings(method: IntegrationMethod, xi: float, T: float) -> Tuple[float, int]:
    """Upper bound and trapezoid interval count for the Fourier integrals."""
    if method is IntegrationMethod.ADAPTIVE:
        sqrt_t = math.sqrt(T)
        upper = min(50.0 * max(1.0, xi * sqrt_t * 5.0), 200.0)
        complexity = xi / max(0.01, sqrt_t)
        points = int(max(200.0, min(1000.0, 200.0 + complexity * 300.0)))
        return upper, points
    return 100.0, 500


# ═══════════════════════════════════════════════════════════════════════════════
# FOURIER PATH
# ═══════════════════════════════════════════════════════════════════════════════

def _sanity_check(contract: OptionContract, call: float, put: float) -> Optional[str]:
    if not (math.isfinite(call) and math.isfinite(put)):
        return "non-finite price"
    S, K, df = contract.S, contract.K, contract.discount_factor
    tol = 1e-4 * max(S, K)
    if call < max(S - K * df, 0.0) - tol or put < max(K * df - S, 0.0) - tol:
        return "price below discounted intrinsic value"
    if call > S + tol or put > K * df + tol:
        return "price above no-arbitrage ceiling"
    if call == 0.0 and put == 0.0:
        return "both prices zero"
    return None


def characteristic_price(contract: OptionContract, params: HestonParams,
                         method: IntegrationMethod) -> PriceOutcome:
    """Fourier price, tagged ``Unstable`` when it cannot be trusted."""
    upper, intervals = integration_settings(method, params.sigma, contract.T)
    try:
        p1, p2 = gil_pelaez_probabilities(contract.S, contract.K, contract.T, contract.r,
                                          params, upper, intervals + 1)
    except (FloatingPointError, OverflowError, ZeroDivisionError, ValueError) as exc:
        return Unstable(f"integration failed: {exc}")

    call, put = fourier_values(contract.S, contract.K, contract.T, contract.r, p1, p2)
    reason = _sanity_check(contract, call, put)
    if reason is not None:
        return Unstable(reason)
    return Ok(OptionValues(max(0.0, call), max(0.0, put)))


# ═══════════════════════════════════════════════════════════════════════════════
# APPROXIMATION PATH
# ═══════════════════════════════════════════════════════════════════════════════

def effective_variance(contract: OptionContract, params: HestonParams, is_call: bool = True) -> float:
    v0, v_long = params.V0, params.theta
    kappa, xi, T = params.kappa, params.sigma, contract.T

    if T <= 0:
        return v0

    m = kappa * T
    decay = 0.0 if m > 20.0 else math.exp(-m)
    if m > 0.001:
        base = v_long + (v0 - v_long) * (1.0 - decay) / m
    else:
        base = v0

    vol_of_vol = xi * xi * T / 3.0
    second_order = xi * xi * math.sqrt(max(0.0001, xi)) * T * 0.08
    third_order = xi * xi * xi * T * 0.02

    moneyness = contract.moneyness
    strike_adjustment = 1.0
    if moneyness > OTM_PUT_MONEYNESS and not is_call:
        strike_adjustment = 1.0 - 0.05 * min(1.0, (moneyness - 1.0) * 2.0)

    return max(0.0001, (base + vol_of_vol + second_order + third_order) * strike_adjustment)


def correlation_adjustment(contract: OptionContract, params: HestonParams,
                           values: OptionValues) -> float:
    """Signed amount moved from put to call by the spot/vol correlation."""
    xi, rho, T = params.sigma, params.rho, contract.T
    S, K = contract.S, contract.K

    forward_intrinsic = S - K * math.exp(-contract.r * T)
    base = rho * xi * math.sqrt(params.V0) * T * forward_intrinsic
    vol_of_vol = rho * xi * xi * T * 0.07 * forward_intrinsic

    scaling = 0.18 + 0.25 * abs(rho) * min(1.0, xi)
    if rho < -0.9:
        scaling *= 1.75
    if xi > 0.7 and rho < -0.7:
        rho_intensity = (abs(rho) - 0.7) / 0.3
        xi_intensity = (xi - 0.7) / 0.3
        short_time_boost = 1.0 + 0.6 * (1.0 / (1.0 + 40.0 * T))
        scaling *= 1.0 + 1.2 * rho_intensity * xi_intensity * short_time_boost

    moneyness = contract.moneyness
    damping = 1.0
    if moneyness > 5.0 or moneyness < 0.2:
        damping = 0.05
    elif moneyness > 3.0 or moneyness < 0.33:
        damping = 0.15
    elif moneyness > 2.0 or moneyness < 0.5:
        damping = 0.3
    elif moneyness > 1.5 or moneyness < 0.67:
        damping = 0.6

    if T < 3.0 / DAYS_PER_YEAR and xi > 0.8 and rho < -0.9:
        damping *= 0.2

    if moneyness > OTM_PUT_MONEYNESS:
        depth = moneyness - 1.0
        damping *= 1.0 / (1.0 + 5.0 * depth)
        if depth > 0.05 and T < 7.0 / DAYS_PER_YEAR:
            damping *= 0.5

    adjustment = (base + vol_of_vol) * scaling * damping
    cap = min(max(values.call, values.put) * 0.05, K * T * 0.01)
    return math.copysign(min(abs(adjustment), cap), adjustment)


def apply_correlation_adjustment(contract: OptionContract, params: HestonParams,
                                 values: OptionValues) -> OptionValues:
    """Parity-preserving correlation adjustment; reverts on any bound violation."""
    T = contract.T
    if T <= 0:
        return values
    if params.sigma > 0.8 and abs(params.rho) > 0.95 and T < 2.0 / DAYS_PER_YEAR:
        return values

    S, K = contract.S, contract.K
    adjustment = correlation_adjustment(contract, params, values)
    intrinsic_call, intrinsic_put = contract.intrinsic_call, contract.intrinsic_put
    df = contract.discount_factor

    call = min(max(intrinsic_call, values.call + adjustment), S)
    put = min(max(intrinsic_put, values.put - adjustment), K * df)

    if contract.moneyness > OTM_PUT_MONEYNESS:
        bound = intrinsic_put + K * T * 0.002
        if put > bound:
            scale = min(1.0, bound / max(put, 0.001))
            put = values.put + (put - values.put) * scale
            call = values.call + (call - values.call) * scale
            call = max(intrinsic_call, min(call, S))
            put = max(intrinsic_put, min(put, K * df))

    if call < intrinsic_call or put < intrinsic_put or call > S or put > K * df:
        return values
    return OptionValues(call, put)


def approximation_price(contract: OptionContract, params: HestonParams) -> OptionValues:
    """Black-Scholes at the effective variance plus correlation adjustment."""
    eff_vol = math.sqrt(effective_variance(contract, params))
    base = black_scholes_values(contract.S, contract.K, contract.r, contract.T, eff_vol)
    adjusted = apply_correlation_adjustment(contract, params, base)

    if contract.moneyness > OTM_PUT_MONEYNESS:
        max_reasonable_put = contract.K * 0.20
        if adjusted.put > max_reasonable_put:
            put = base.put + (max_reasonable_put - base.put) * 0.5
            call = max(0.0, put + contract.S - contract.K * contract.discount_factor)
            return OptionValues(call, put)
    return adjusted


# ═══════════════════════════════════════════════════════════════════════════════
# SHARED POST-PROCESSING
# ═══════════════════════════════════════════════════════════════════════════════

def ensure_put_call_parity(contract: OptionContract, values: OptionValues) -> OptionValues:
    """Average each price with the parity-implied value from the other."""
    df = contract.discount_factor
    parity_call = values.put + contract.S - contract.K * df
    parity_put = values.call - contract.S + contract.K * df
    return OptionValues((values.call + max(0.0, parity_call)) * 0.5,
                        (values.put + max(0.0, parity_put)) * 0.5)


def enforce_fundamental_properties(contract: OptionContract, params: HestonParams,
                                   values: OptionValues, model_type: ModelType) -> OptionValues:
    S, K, T = contract.S, contract.K, contract.T
    df = contract.discount_factor
    intrinsic_call, intrinsic_put = contract.intrinsic_call, contract.intrinsic_put

    call = min(max(values.call, 0.0, intrinsic_call), S)
    put = min(max(values.put, 0.0, intrinsic_put), K * df)

    # short-dated, high vol-of-vol, near-perfect correlation
    if (model_type is not ModelType.VARIANCE_GAMMA and T < 7.0 / DAYS_PER_YEAR
            and params.sigma > 0.8 and abs(params.rho) > 0.9):
        moneyness = contract.moneyness
        if moneyness > OTM_PUT_MONEYNESS:
            cap = intrinsic_put + K * 0.0005 * T * DAYS_PER_YEAR
            if put > cap:
                put = cap
                call = min(max(intrinsic_call, put + S - K * df), S)
        elif moneyness < OTM_CALL_MONEYNESS:
            cap = intrinsic_call + S * 0.0005 * T * DAYS_PER_YEAR
            if call > cap:
                call = cap
                put = min(max(intrinsic_put, call - S + K * df), K * df)

    return OptionValues(call, put)


def optimal_delta_bump(contract: OptionContract) -> float:
    S, T = contract.S, contract.T
    bump = 1.0
    if T < 7.0 / DAYS_PER_YEAR:
        bump = max(0.01, S * 0.0001)
    elif T < 30.0 / DAYS_PER_YEAR:
        bump = max(0.1, S * 0.0005)
    if S > 1000.0:
        bump = max(bump, S * 0.0001)
    return min(bump, 0.5 * S)


def analytic_delta(contract: OptionContract, params: HestonParams) -> Tuple[float, float]:
    """N(d₁) at the effective volatility."""
    eff_vol = math.sqrt(effective_variance(contract, params))
    S, K, T = contract.S, contract.K, contract.T

    if T <= 0 or eff_vol <= 0:
        if S > K:
            return 1.0, 0.0
        if S < K:
            return 0.0, -1.0
        return 0.5, -0.5

    d1 = (math.log(S / K) + (contract.r + eff_vol * eff_vol / 2.0) * T) / (eff_vol * math.sqrt(T))
    call_delta = cumulative_normal(d1)
    put_delta = call_delta - 1.0
    return max(0.0, min(1.0, call_delta)), max(-1.0, min(0.0, put_delta))


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class HestonEngine:
    """
    Heston calculator for one contract.

    Attributes:
        contract: Option terms
        params: Frozen Heston parameters (replaced by calibration)
        integration_method: Fourier grid choice or APPROXIMATION
        model_type: Which variant pricer to use
        extensions: Jump / skew / kurtosis settings for the variants
    """

    def __init__(
        self,
        contract: Optional[OptionContract] = None,
        params: Optional[HestonParams] = None,
        integration_method: IntegrationMethod = IntegrationMethod.APPROXIMATION,
        model_type: ModelType = ModelType.STANDARD_HESTON,
        extensions: Optional[HestonExtensions] = None,
    ):
        self.contract = contract
        self.params = params or get_default_params()
        self.integration_method = integration_method
        self.model_type = model_type
        self.extensions = extensions or HestonExtensions()

        self.call_value = 0.0
        self.put_value = 0.0
        self.greeks = Greeks()

        self._variant_pricers: Dict[ModelType, Callable[[OptionContract, HestonParams], OptionValues]] = {
            ModelType.STANDARD_HESTON: self._price_standard,
            ModelType.JUMP_DIFFUSION_HESTON: self._price_jump_diffusion,
            ModelType.VARIANCE_GAMMA: self._price_variance_gamma,
            ModelType.ASYMMETRIC_LAPLACE: self._price_asymmetric_laplace,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # Variant pricers
    # ═══════════════════════════════════════════════════════════════════════

    def _price_characteristic(self, contract: OptionContract, params: HestonParams) -> OptionValues:
        adjusted = validate_and_adjust(params, self.model_type)
        outcome = characteristic_price(contract, adjusted, self.integration_method)
        if isinstance(outcome, Unstable):
            logger.debug("Fourier price unstable (%s); using approximation", outcome.reason)
            return approximation_price(contract, adjusted)
        return apply_correlation_adjustment(contract, adjusted, outcome.values)

    def _price_standard(self, contract: OptionContract, params: HestonParams) -> OptionValues:
        if (self.integration_method in (IntegrationMethod.ADAPTIVE, IntegrationMethod.FIXED)
                or self.extensions.jumps_enabled):
            return self._price_characteristic(contract, params)
        return approximation_price(contract, params)

    def _price_jump_diffusion(self, contract: OptionContract, params: HestonParams) -> OptionValues:
        base = self._price_characteristic(contract, params)
        ext = self.extensions
        if not ext.jumps_enabled or ext.jump_intensity <= 0:
            return base

        vol = max(0.001, params.current_volatility)
        jump = self._jump_component(contract, vol)
        skew = self._skew_adjustment(contract)
        kurtosis = self._kurtosis_adjustment(contract, vol)

        values = OptionValues(max(0.0, base.call + jump + skew + kurtosis),
                              max(0.0, base.put + jump - skew + kurtosis))
        return ensure_put_call_parity(contract, values)

    def _jump_component(self, contract: OptionContract, vol: float) -> float:
        ext = self.extensions
        T = contract.T
        expected_jumps = ext.jump_intensity * T
        if expected_jumps < 0.001:
            return 0.0
        mu_j, sigma_j = ext.mean_jump_size, ext.jump_volatility
        jump_variance = expected_jumps * (mu_j * mu_j + sigma_j * sigma_j)
        contribution = expected_jumps * mu_j * contract.S * 0.1
        contribution += jump_variance * contract.S * 0.05
        return contribution * math.sqrt(T) * vol

    def _skew_adjustment(self, contract: OptionContract) -> float:
        asymmetry = self.extensions.tail_asymmetry
        if abs(asymmetry) < 0.001:
            return 0.0
        moneyness = contract.moneyness
        effect = asymmetry * contract.T * contract.S * 0.02
        if moneyness > 1.0:
            effect *= -(moneyness - 1.0) * 2.0
        elif moneyness < 1.0:
            effect *= (1.0 - moneyness) * 1.5
        return effect

    def _kurtosis_adjustment(self, contract: OptionContract, vol: float) -> float:
        enhancement = self.extensions.kurtosis_enhancement
        if enhancement <= 0:
            return 0.0
        contribution = enhancement * contract.T * vol * contract.S * 0.01
        return contribution * (abs(contract.moneyness - 1.0) + 0.1)

    def _price_variance_gamma(self, contract: OptionContract, params: HestonParams) -> OptionValues:
        return variance_gamma_values(contract.S, contract.K, contract.r, contract.T,
                                     sigma=params.current_volatility,
                                     nu=params.sigma,
                                     theta=self.extensions.mean_jump_size)

    def _price_asymmetric_laplace(self, contract: OptionContract, params: HestonParams) -> OptionValues:
        base = approximation_price(contract, params)
        asymmetry = self.extensions.tail_asymmetry
        right_tail = 1.0 / (1.0 - asymmetry)
        left_tail = 1.0 / (1.0 + asymmetry)

        moneyness = contract.moneyness
        call, put = base.call, base.put
        if moneyness > 1.0:
            put += (left_tail - 1.0) * base.put * 0.2 * contract.T
        elif moneyness < 1.0:
            call += (right_tail - 1.0) * base.call * 0.2 * contract.T

        return ensure_put_call_parity(contract, OptionValues(max(0.0, call), max(0.0, put)))

    # ═══════════════════════════════════════════════════════════════════════
    # Pricer capability
    # ═══════════════════════════════════════════════════════════════════════

    def price(self, contract: OptionContract, params: HestonParams) -> OptionValues:
        if contract.is_expired:
            return OptionValues(contract.intrinsic_call, contract.intrinsic_put)
        values = self._variant_pricers[self.model_type](contract, params)
        return enforce_fundamental_properties(contract, params, values, self.model_type)

    def delta(self, contract: OptionContract, params: HestonParams) -> Tuple[float, float]:
        """
        Central-difference delta with an adaptive bump.

        Falls back to ``analytic_delta`` when the difference is not finite,
        too small to resolve, out of range, or breaks Δ_C - Δ_P ≈ 1.
        """
        if contract.T < 0.01 / DAYS_PER_YEAR:
            return analytic_delta(contract, params)

        moneyness = contract.moneyness
        if moneyness > 100.0:
            return 1.0, 0.0
        if moneyness < 0.01:
            return 0.0, -1.0

        bump = optimal_delta_bump(contract)
        up = self.price(contract.with_spot(contract.S + bump), params)
        down = self.price(contract.with_spot(contract.S - bump), params)

        call_delta = (up.call - down.call) / (2.0 * bump)
        put_delta = (up.put - down.put) / (2.0 * bump)

        if not (math.isfinite(call_delta) and math.isfinite(put_delta)):
            return analytic_delta(contract, params)
        if abs(up.call - down.call) < 0.001 or abs(up.put - down.put) < 0.001:
            return analytic_delta(contract, params)
        if call_delta > 1.5 or call_delta < -0.5 or put_delta > 0.5 or put_delta < -1.5:
            return analytic_delta(contract, params)
        if abs(call_delta - put_delta - 1.0) > 0.15:
            return analytic_delta(contract, params)

        call_delta = max(0.0, min(1.0, call_delta))
        put_delta = max(-1.0, min(0.0, call_delta - 1.0))
        return call_delta, put_delta

    # ═══════════════════════════════════════════════════════════════════════
    # Stateful API
    # ═══════════════════════════════════════════════════════════════════════

    def is_feller_condition_satisfied(self) -> bool:
        """2κθ ≥ ξ² with θ the long-term variance."""
        return self.params.feller_satisfied

    def calculate_price(self) -> OptionValues:
        self.params.warn_if_feller_violated()
        values = self.price(self.contract, self.params)
        self.call_value, self.put_value = values.call, values.put
        return values

    def calculate_call(self) -> float:
        return self.calculate_price().call

    def calculate_put(self) -> float:
        return self.calculate_price().put

    def calculate_all(self) -> Greeks:
        self.calculate_price()
        self.greeks = GreeksCalculator(self, gamma_bump=1.0).all_greeks(self.contract, self.params)
        return self.greeks

    def calibrate_to_market_prices(
        self,
        market_puts: Sequence[float],
        strikes: Sequence[float],
        expiries_days: Sequence[float],
        token: Optional[CancellationToken] = None,
        max_passes: Optional[int] = None,
        grid: Optional[Dict[str, Tuple[float, float]]] = None,
        refine: bool = False,
        verbose: bool = False,
    ) -> CalibrationResult:
        """
        Fit the five Heston parameters to put prices and replace ``params``.

        Raises:
            ValueError: the three sequences differ in length
            OperationCancelledError: the token was cancelled
        """
        calibrator = HestonGridCalibrator(self, self.contract, grid=grid, verbose=verbose)
        result = calibrator.calibrate(market_puts, strikes, expiries_days,
                                      initial=self.params, token=token,
                                      max_passes=max_passes, refine=refine)
        self.params = result.params
        return result
