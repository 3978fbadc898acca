"""
Variance Gamma Pricer (Heuristic Closed Form)

═══════════════════════════════════════════════════════════════════════════════
VG-ADJUSTED BLACK-SCHOLES
═══════════════════════════════════════════════════════════════════════════════

The pure-jump VG price is approximated by a Black-Scholes price at an
inflated volatility plus explicit premia for the jump asymmetry (θ) and the
kurtosis (ν) of the gamma clock.

1. EFFECTIVE VOLATILITY:
   σ_base = σ·(1 + 0.4ν)
   σ_eff  = √max(1e-4, σ_base² + νT(σ² + 25θ²))

2. DRIFT (negative skew only):
   r_adj = r + 2θν     if θ < 0,   otherwise r

3. BASE PRICES (discounted at r, not r_adj):
   d₁ = [ln(S/K) + (r_adj + σ_eff²/2)T] / (σ_eff√T),   d₂ = d₁ - σ_eff√T
   C = S·N(d₁) - K·e^{-rT}·N(d₂),   P = K·e^{-rT}·N(-d₂) - S·N(-d₁)

4. PREMIA:
   jump      J = ν²·T·S·0.01·(1 + 10|θ|)
             θ < 0:  P += 3·J·|θ|·ν        θ > 0:  C += 3·J·θ·ν
   kurtosis  C, P += ν²·T·S·0.008
   downside  θ < 0 and ν > 0.5:  P += |θ|(ν - 0.5)·S·T·0.05

   Both prices are floored at zero.

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import math
from typing import Dict, Optional, Sequence, Tuple

from ..core.errors import CancellationToken
from ..core.normal import cumulative_normal
from ..core.parameters import OptionContract, VarianceGammaParams, get_default_vg_params
from ..core.results import OptionValues, Greeks
from ..greeks.calculator import GreeksCalculator
from ..calibration.optimizer import CalibrationResult, calibrate_variance_gamma

logger = logging.getLogger(__name__)

SPOT_BUMP = 1.0


def variance_gamma_values(S: float, K: float, r: float, T: float,
                          sigma: float, nu: float, theta: float) -> OptionValues:
    """Heuristic VG call and put; intrinsic value at expiry."""
    if T <= 0.0:
        return OptionValues(max(S - K, 0.0), max(K - S, 0.0))

    base_vol = sigma * (1.0 + nu * 0.4)
    total_variance = base_vol * base_vol + nu * T * (sigma * sigma + theta * theta * 25.0)
    eff_vol = math.sqrt(max(0.0001, total_variance))

    adjusted_rate = r + theta * nu * 2.0 if theta < 0 else r

    sqrt_t = math.sqrt(T)
    d1 = (math.log(S / K) + (adjusted_rate + eff_vol * eff_vol / 2.0) * T) / (eff_vol * sqrt_t)
    d2 = d1 - eff_vol * sqrt_t
    df = math.exp(-r * T)

    call = S * cumulative_normal(d1) - K * df * cumulative_normal(d2)
    put = K * df * cumulative_normal(-d2) - S * cumulative_normal(-d1)

    jump_premium = nu * nu * T * S * 0.01 * (1.0 + abs(theta) * 10.0)
    if theta < 0:
        put += jump_premium * abs(theta) * nu * 3.0
    elif theta > 0:
        call += jump_premium * theta * nu * 3.0

    uncertainty = nu * nu * T * S * 0.008
    call += uncertainty
    put += uncertainty

    if theta < 0 and nu > 0.5:
        put += abs(theta) * (nu - 0.5) * S * T * 0.05

    return OptionValues(max(0.0, call), max(0.0, put))


class VarianceGammaEngine:
    """
    Variance Gamma calculator for one contract.

    Greeks use central differences (spot bump 1, volatility bump 0.01);
    delta is not clamped.
    """

    def __init__(self, contract: Optional[OptionContract] = None,
                 params: Optional[VarianceGammaParams] = None):
        self.contract = contract
        self.params = params or get_default_vg_params()
        self.call_value = 0.0
        self.put_value = 0.0
        self.greeks = Greeks()

    def price(self, contract: OptionContract, params: VarianceGammaParams) -> OptionValues:
        return variance_gamma_values(contract.S, contract.K, contract.r, contract.T,
                                     params.sigma, params.nu, params.theta)

    def delta(self, contract: OptionContract, params: VarianceGammaParams) -> Tuple[float, float]:
        up = self.price(contract.with_spot(contract.S + SPOT_BUMP), params)
        down = self.price(contract.with_spot(contract.S - SPOT_BUMP), params)
        return ((up.call - down.call) / (2.0 * SPOT_BUMP),
                (up.put - down.put) / (2.0 * SPOT_BUMP))

    def calculate_price(self) -> OptionValues:
        values = self.price(self.contract, self.params)
        self.call_value, self.put_value = values.call, values.put
        return values

    def calculate_all(self) -> Greeks:
        self.calculate_price()
        self.greeks = GreeksCalculator(self, gamma_bump=SPOT_BUMP).all_greeks(self.contract, self.params)
        return self.greeks

    def calibrate_to_market_prices(
        self,
        market_puts: Sequence[float],
        strikes: Sequence[float],
        expiries_days: Sequence[float],
        grid: Optional[Dict[str, Tuple[float, float, float]]] = None,
        token: Optional[CancellationToken] = None,
    ) -> CalibrationResult:
        """
        Replace ``params`` with the best grid point for the given puts.

        ``grid`` maps 'sigma', 'nu', 'theta' to (start, end, step); the
        default is the full 36 × 50 × 39 grid.
        """
        result = calibrate_variance_gamma(self, self.contract, market_puts, strikes,
                                          expiries_days, self.params, grid=grid, token=token)
        self.params = result.params
        return result
