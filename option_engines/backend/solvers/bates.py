"""
Bates (SVJ) Engine: Heston Stochastic Volatility with Log-Normal Jumps

═══════════════════════════════════════════════════════════════════════════════
1. MODEL
═══════════════════════════════════════════════════════════════════════════════

   dS/S = (r - λk_J)dt + √V dW_S + (e^Y - 1)dN,   Y ~ N(μ_J, σ_J²)
   dV   = κ(θ - V)dt + ξ√V dW_V,                  E[dW_S dW_V] = ρ dt

   N is a Poisson process with intensity λ; k_J = e^{μ_J + σ_J²/2} - 1.

═══════════════════════════════════════════════════════════════════════════════
2. PRICING
═══════════════════════════════════════════════════════════════════════════════

   Characteristic function (characteristic.py, drift r* = r - λk_J) inverted
   with a trapezoid rule, discounted at r:

     U = min(150·(1 + 5ξ + 2λ)·(1 + 1/√max(0.02, T)), 2500)
     N = clamp(600·(1 + 8ξ + 4λ)·(1 + 2/√max(0.02, T)), 600, 4000)

   or Monte Carlo (monte_carlo.py) when ``use_monte_carlo`` is set.
   Both are followed by the no-arbitrage bounds and a parity repair.

═══════════════════════════════════════════════════════════════════════════════
3. COS DELTA (Fang & Oosterlee 2008)
═══════════════════════════════════════════════════════════════════════════════

   Truncation range from approximate cumulants of ln S_T:

     v̄  = θ + (V₀ - θ)(1 - e^{-κT})/κT
     c₁ = ln S + (r* - v̄/2)T + λμ_J·T
     c₂ = v̄T + λ(μ_J² + σ_J²)T
     [a, b] = c₁ ∓ L·√c₂

   Call payoff coefficients with u_k = kπ/(b - a):

     χ_k = [e^b(cos(u_k(b-a)) + u_k sin(u_k(b-a)))
            - K(cos(u_k(ln K - a)) + u_k sin(u_k(ln K - a)))] / (1 + u_k²)
     ψ_k = [sin(u_k(b-a)) - sin(u_k(ln K - a))] / u_k
     V_k = 2/(b-a)·(χ_k - Kψ_k),   V₀ = (e^b - K - K(b - ln K))/(b-a)

   ln S enters φ only through e^{iu ln S}, so ∂φ/∂ln S = iu·φ and

     Δ_C = (1/S)·Σ_k e^{-rT}·Re[iu_k·φ(u_k)·e^{-iu_k a}]·V_k

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import math
from dataclasses import replace
from typing import Optional, Tuple

import numpy as np

from ..core.errors import CancellationToken
from ..core.parameters import (
    OptionContract,
    BatesParams,
    HestonParams,
    get_default_bates_params,
)
from ..core.results import OptionValues, Greeks
from ..greeks.calculator import GreeksCalculator
from .characteristic import characteristic_function, gil_pelaez_probabilities, fourier_values
from .monte_carlo import MonteCarloSimulator

logger = logging.getLogger(__name__)

MC_PATHS = 20000
MC_STEPS = 200
MC_SEED = 17

COS_TERMS = 256
COS_MIN_TERMS = 32
COS_TRUNCATION = 10.0

PARITY_TOLERANCE = 1e-3


def validate_bates_params(params: BatesParams) -> BatesParams:
    """Floors volatilities, κ and ξ at 0.001, clips ρ to ±0.999, λ ≥ 0, σ_J ≥ 1e-4."""
    h = params.heston
    heston = HestonParams.from_volatilities(
        current_vol=max(0.001, h.current_volatility),
        long_term_vol=max(0.001, h.long_term_volatility),
        kappa=max(0.001, h.kappa),
        sigma=max(0.001, h.sigma),
        rho=max(-0.999, min(0.999, h.rho)),
    )
    jumps = replace(params.jumps,
                    intensity=max(0.0, params.jumps.intensity),
                    volatility=max(0.0001, params.jumps.volatility))
    return BatesParams(heston=heston, jumps=jumps)


def integration_upper_bound(T: float, xi: float, intensity: float) -> float:
    boost = 1.0 + 1.0 / math.sqrt(max(0.02, T)) if T > 0 else 1.0
    return min(150.0 * (1.0 + xi * 5.0 + intensity * 2.0) * boost, 2500.0)


def integration_points(T: float, xi: float, intensity: float) -> int:
    factor = 1.0 + xi * 8.0 + intensity * 4.0
    if T > 0:
        factor *= 1.0 + 2.0 / math.sqrt(max(0.02, T))
    return max(600, min(4000, int(600 * factor)))


def jump_compensated_rate(r: float, params: BatesParams) -> float:
    return r - params.jumps.intensity * params.jumps.mean_relative_jump


def enforce_bounds_and_parity(contract: OptionContract, values: OptionValues) -> OptionValues:
    S, K = contract.S, contract.K
    df = math.exp(-contract.r * max(contract.T, 0.0))

    call_lower, call_upper = max(S - K * df, 0.0), S
    put_lower, put_upper = max(K * df - S, 0.0), K * df

    call = min(call_upper, max(call_lower, values.call))
    put = min(put_upper, max(put_lower, values.put))

    target = S - K * df
    if abs(call - put - target) > PARITY_TOLERANCE:
        put = min(put_upper, max(put_lower, call - target))
    return OptionValues(call, put)


def cos_call_delta(contract: OptionContract, params: BatesParams,
                   terms: int = COS_TERMS, truncation: float = COS_TRUNCATION) -> float:
    """Call delta from the COS series; 0.0 if the sum is not finite."""
    S, K, r, T = contract.S, contract.K, contract.r, contract.T
    h, j = params.heston, params.jumps
    r_star = jump_compensated_rate(r, params)

    v_bar = h.theta + (h.V0 - h.theta) * (1.0 - math.exp(-h.kappa * T)) / (h.kappa * T + 1e-12)
    c1 = math.log(S) + (r_star - 0.5 * v_bar) * T + j.intensity * j.mean * T
    c2 = v_bar * T + j.intensity * (j.mean ** 2 + j.volatility ** 2) * T
    width = truncation * math.sqrt(max(c2, 1e-12))
    a, b = c1 - width, c1 + width
    span = b - a

    n = max(COS_MIN_TERMS, int(terms))
    k = np.arange(n)
    u = k * math.pi / span
    y_strike = math.log(K) - a
    y_upper = span

    chi = (math.exp(b) * (np.cos(u * y_upper) + u * np.sin(u * y_upper))
           - K * (np.cos(u * y_strike) + u * np.sin(u * y_strike))) / (1.0 + u * u)
    psi = np.where(k == 0, y_upper - y_strike,
                   (np.sin(u * y_upper) - np.sin(u * y_strike)) / np.where(k == 0, 1.0, u))
    coefficients = 2.0 / span * (chi - K * psi)
    coefficients[0] *= 0.5

    phi = characteristic_function(u, S, T, r_star, h, j)
    d_phi = 1j * u * phi * np.exp(-1j * u * a)
    discount = math.exp(-r * T)

    d_call = float(np.sum(discount * d_phi.real * coefficients))
    delta = d_call / S
    if not math.isfinite(delta):
        return 0.0
    return delta


class BatesEngine:
    """
    Bates SVJ calculator for one contract.

    Attributes:
        contract: Option terms
        params: Heston plus jump parameters
        use_monte_carlo: Price by simulation instead of Fourier inversion
        use_cos_delta: Delta from the COS series instead of bump-and-reprice
        token: Cancellation token handed to the simulator
    """

    def __init__(
        self,
        contract: Optional[OptionContract] = None,
        params: Optional[BatesParams] = None,
        use_monte_carlo: bool = False,
        mc_paths: int = MC_PATHS,
        mc_steps: int = MC_STEPS,
        mc_seed: int = MC_SEED,
        use_cos_delta: bool = False,
        cos_terms: int = COS_TERMS,
        cos_truncation: float = COS_TRUNCATION,
        token: Optional[CancellationToken] = None,
    ):
        self.contract = contract
        self.params = params or get_default_bates_params()
        self.use_monte_carlo = use_monte_carlo
        self.mc_paths = mc_paths
        self.mc_steps = mc_steps
        self.mc_seed = mc_seed
        self.use_cos_delta = use_cos_delta
        self.cos_terms = cos_terms
        self.cos_truncation = cos_truncation
        self.token = token

        self.call_value = 0.0
        self.put_value = 0.0
        self.greeks = Greeks()

    def _price_characteristic(self, contract: OptionContract, params: BatesParams) -> OptionValues:
        T = contract.T
        xi, intensity = params.heston.sigma, params.jumps.intensity
        p1, p2 = gil_pelaez_probabilities(
            contract.S, contract.K, T, jump_compensated_rate(contract.r, params),
            params.heston,
            upper=integration_upper_bound(T, xi, intensity),
            points=integration_points(T, xi, intensity) + 1,
            jumps=params.jumps,
        )
        call, put = fourier_values(contract.S, contract.K, T, contract.r, p1, p2)
        return OptionValues(call, put)

    def _price_monte_carlo(self, contract: OptionContract, params: BatesParams) -> OptionValues:
        simulator = MonteCarloSimulator(params.heston, params.jumps, seed=self.mc_seed)
        call, put = simulator.price(contract.S, contract.K, contract.r, contract.T,
                                    self.mc_steps, self.mc_paths, self.token)
        return OptionValues(call, put)

    def price(self, contract: OptionContract, params: BatesParams) -> OptionValues:
        if contract.is_expired:
            return OptionValues(contract.intrinsic_call, contract.intrinsic_put)
        params = validate_bates_params(params)
        if self.use_monte_carlo:
            values = self._price_monte_carlo(contract, params)
        else:
            values = self._price_characteristic(contract, params)
        if not values.is_finite():
            logger.debug("Bates price not finite for %s; using intrinsic bounds", contract)
        return enforce_bounds_and_parity(contract, values)

    def delta(self, contract: OptionContract, params: BatesParams) -> Tuple[float, float]:
        if self.use_cos_delta and not contract.is_expired:
            call_delta = cos_call_delta(contract, validate_bates_params(params),
                                        self.cos_terms, self.cos_truncation)
            call_delta = max(0.0, min(1.0, call_delta))
            return call_delta, max(-1.0, min(0.0, call_delta - 1.0))

        bump = max(0.01, 0.001 * contract.S)
        up = self.price(contract.with_spot(contract.S + bump), params)
        down = self.price(contract.with_spot(contract.S - bump), params)
        call_delta = (up.call - down.call) / (2.0 * bump)
        put_delta = (up.put - down.put) / (2.0 * bump)
        return max(0.0, min(1.0, call_delta)), max(-1.0, min(0.0, put_delta))

    def calculate_price(self) -> OptionValues:
        values = self.price(self.contract, self.params)
        self.call_value, self.put_value = values.call, values.put
        return values

    def calculate_all(self) -> Greeks:
        self.calculate_price()
        bump = max(0.01, 0.001 * self.contract.S)
        self.greeks = GreeksCalculator(self, gamma_bump=bump).all_greeks(self.contract, self.params)
        return self.greeks
