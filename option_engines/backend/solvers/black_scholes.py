"""
Black-Scholes Closed Form, Greeks and Implied Volatility

═══════════════════════════════════════════════════════════════════════════════
PRICING
═══════════════════════════════════════════════════════════════════════════════

   d₁ = [ln(S/K) + (r + σ²/2)T] / (σ√T)
   d₂ = [ln(S/K) + (r - σ²/2)T] / (σ√T)

   C = S·N(d₁) - K·e^{-rT}·N(d₂)
   P = K·e^{-rT}·N(-d₂) - S·N(-d₁)

═══════════════════════════════════════════════════════════════════════════════
GREEKS
═══════════════════════════════════════════════════════════════════════════════

   Δ_C = N(d₁),  Δ_P = -N(-d₁)         (unit spot bump at fixed d₁, d₂)
   Γ   = φ(d₁) / (Sσ√T)
   ν   = S·φ(d₁)·√T / 100              (per volatility point)
   Θ_C = [-Sφ(d₁)σ/(2√T) - rKe^{-rT}N(d₂)] / 365
   Θ_P = [-Sφ(d₁)σ/(2√T) + rKe^{-rT}N(-d₂)] / 365
   Vanna = -φ(d₁)·d₂/σ
   Charm_C = -φ(d₁)(2rT - d₂σ√T) / (2Tσ√T) / 365
   Charm_P = Charm_C + φ(d₁)·2r/(σ√T) / 365

   Hull-White minimum-variance delta: Δ + ν·(∂σ/∂S), clamped to the
   delta range of the option.

═══════════════════════════════════════════════════════════════════════════════
IMPLIED VOLATILITY
═══════════════════════════════════════════════════════════════════════════════

   Bisection: bracket [1e-5, 0.3], doubling the upper end until the model
   price covers the target, then halve until |price - target| < accuracy.

   Newton-Raphson: σ ← σ - (price(σ) - target) / vega(σ),
   starting from Brenner-Subrahmanyam σ₀ = √(2π/T)·price/S.
   Steps that leave the [1e-5, 5] bracket fall back to bisection.

   Fast: moneyness-aware starting point (Corrado-Miller correction away from
   the money) refined with Newton-Raphson.

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import math
from typing import Optional, Tuple

from ..core.errors import BracketExhaustedError
from ..core.normal import cumulative_normal, normal_density, exp_opt, SQRT_2PI
from ..core.parameters import OptionContract, BlackScholesParams, DAYS_PER_YEAR
from ..core.results import OptionValues, Greeks

logger = logging.getLogger(__name__)

IV_PRICE_ACCURACY = 0.005
IV_MAX_ITERATIONS = 100
IV_SIGMA_CEILING = 1e10
NEWTON_MIN_VEGA = 1e-10
NEWTON_SIGMA_FLOOR = 1e-5
NEWTON_SIGMA_CEILING = 5.0


# ═══════════════════════════════════════════════════════════════════════════════
# PURE HELPERS (shared with the Heston, VG and risk code)
# ═══════════════════════════════════════════════════════════════════════════════

def d1_d2(S: float, K: float, r: float, T: float, sigma: float) -> Tuple[float, float]:
    """d₁, d₂. Undefined for σ = 0 or T = 0; callers guard."""
    sig_sqrt_t = sigma * math.sqrt(T)
    log_sk = math.log(S / K)
    d1 = (log_sk + T * (r + sigma * sigma / 2.0)) / sig_sqrt_t
    d2 = (log_sk + T * (r - sigma * sigma / 2.0)) / sig_sqrt_t
    return d1, d2


def call_value(S: float, K: float, r: float, T: float, d1: float, d2: float) -> float:
    return S * cumulative_normal(d1) - cumulative_normal(d2) * K * exp_opt(-r * T)


def put_value(S: float, K: float, r: float, T: float, d1: float, d2: float) -> float:
    return cumulative_normal(-d2) * K * exp_opt(-r * T) - S * cumulative_normal(-d1)


def black_scholes_values(S: float, K: float, r: float, T: float, sigma: float) -> OptionValues:
    """Call and put; intrinsic value when T ≤ 0 or σ ≤ 0."""
    if T <= 0.0 or sigma <= 0.0:
        return OptionValues(max(S - K, 0.0), max(K - S, 0.0))
    d1, d2 = d1_d2(S, K, r, T, sigma)
    return OptionValues(call_value(S, K, r, T, d1, d2), put_value(S, K, r, T, d1, d2))


def black_scholes_call_delta(S: float, K: float, r: float, T: float, sigma: float) -> float:
    if T <= 0.0 or sigma <= 0.0:
        return 1.0 if S > K else 0.0
    d1, _ = d1_d2(S, K, r, T, sigma)
    return cumulative_normal(d1)


def inflection_volatility(contract: OptionContract) -> float:
    """
    σ where the price is steepest in σ: √(2|ln(S/K) + rT|/T), kept inside
    [0.05, 5]. Newton-Raphson started here moves monotonically to the root.
    """
    if contract.T <= 0.0:
        return 0.2
    x = math.log(contract.S / contract.K) + contract.r * contract.T
    sigma = math.sqrt(2.0 * abs(x) / contract.T)
    return min(max(sigma, 0.05), NEWTON_SIGMA_CEILING)


def initial_iv_guess(contract: OptionContract, option_price: float, is_call: bool) -> float:
    """
    Starting volatility for Newton-Raphson.

    Near the money (|ln(S/K)| < 0.1) the Brenner-Subrahmanyam estimate on the
    time value; elsewhere puts are converted to synthetic calls and the
    Corrado-Miller style correction (1 + m²/(2a²)) is applied.
    """
    T = contract.T
    if T <= 0.0:
        return 0.2

    S, K, r = contract.S, contract.K, contract.r
    m = math.log(S / K)

    intrinsic = contract.intrinsic_call if is_call else contract.intrinsic_put
    time_value = max(option_price - intrinsic, 0.0)

    if abs(m) < 0.1:
        sigma = math.sqrt(2.0 * math.pi / T) * (time_value / S)
    else:
        price_for_approx = option_price
        if not is_call:
            # C = P + S - K·e^{-rT}
            price_for_approx = option_price + S - K * math.exp(-r * T)
        time_value_call = max(price_for_approx - contract.intrinsic_call, 0.0)
        a = max(time_value_call / S, 1e-6)
        sigma = math.sqrt(2.0 * math.pi / T) * a * (1.0 + 0.5 * (m * m) / (a * a))

    # deep OTM puts produce tiny guesses
    if not is_call and S > K and option_price / S < 0.01 and sigma < 0.15:
        sigma = 0.25

    if sigma < 0.05:
        sigma = 0.2
    if sigma > 5.0:
        sigma = 0.5
    return sigma


class BlackScholesEngine:
    """
    Black-Scholes calculator for one contract.

    Inputs are ``contract``, ``volatility``, ``spot_vol_slope`` (∂σ/∂S used by
    the Hull-White delta) and ``iv_accuracy``. ``calculate_price()`` and
    ``calculate_all()`` fill ``call_value``, ``put_value`` and ``greeks``.
    """

    def __init__(
        self,
        contract: Optional[OptionContract] = None,
        volatility: float = 0.2,
        spot_vol_slope: float = 0.0,
        iv_accuracy: float = IV_PRICE_ACCURACY,
    ):
        self.contract = contract
        self.volatility = volatility
        self.spot_vol_slope = spot_vol_slope
        self.iv_accuracy = iv_accuracy
        self.iteration_count = 0

        self.call_value = 0.0
        self.put_value = 0.0
        self.greeks = Greeks()

    # ═══════════════════════════════════════════════════════════════════════
    # Pricer capability (used by the generic finite-difference Greeks)
    # ═══════════════════════════════════════════════════════════════════════

    def price(self, contract: OptionContract, params: BlackScholesParams) -> OptionValues:
        return black_scholes_values(contract.S, contract.K, contract.r, contract.T, params.sigma)

    def delta(self, contract: OptionContract, params: BlackScholesParams) -> Tuple[float, float]:
        call_delta = black_scholes_call_delta(contract.S, contract.K, contract.r,
                                              contract.T, params.sigma)
        return call_delta, call_delta - 1.0

    # ═══════════════════════════════════════════════════════════════════════
    # Stateful API
    # ═══════════════════════════════════════════════════════════════════════

    def _d1_d2(self) -> Tuple[float, float]:
        c = self.contract
        return d1_d2(c.S, c.K, c.r, c.T, self.volatility)

    def calculate_call(self) -> float:
        c = self.contract
        d1, d2 = self._d1_d2()
        return call_value(c.S, c.K, c.r, c.T, d1, d2)

    def calculate_put(self) -> float:
        c = self.contract
        d1, d2 = self._d1_d2()
        return put_value(c.S, c.K, c.r, c.T, d1, d2)

    def calculate_price(self) -> OptionValues:
        c = self.contract
        d1, d2 = self._d1_d2()
        self.call_value = call_value(c.S, c.K, c.r, c.T, d1, d2)
        self.put_value = put_value(c.S, c.K, c.r, c.T, d1, d2)
        return OptionValues(self.call_value, self.put_value)

    def calculate_all(self) -> Greeks:
        """Prices plus the full set of closed-form Greeks."""
        c = self.contract
        S, K, r, T = c.S, c.K, c.r, c.T
        sigma = self.volatility

        d1, d2 = self._d1_d2()
        self.call_value = call_value(S, K, r, T, d1, d2)
        self.put_value = put_value(S, K, r, T, d1, d2)

        # A unit spot bump with d1, d2 held fixed moves the call by N(d1)
        # and the put by -N(-d1).
        delta_call = abs(call_value(S + 1.0, K, r, T, d1, d2) - self.call_value)
        delta_put = -abs(put_value(S + 1.0, K, r, T, d1, d2) - self.put_value)

        pdf_d1 = normal_density(d1)
        sqrt_t = math.sqrt(T) if T > 0.0 else 0.0

        gamma = pdf_d1 / (S * sigma * sqrt_t)
        vega = S * pdf_d1 * sqrt_t / 100.0 if T > 0.0 else 0.0

        common = -(S * pdf_d1 * sigma) / (2.0 * sqrt_t)
        interest = r * K * math.exp(-r * T)
        theta_call = (common - interest * cumulative_normal(d2)) / DAYS_PER_YEAR
        theta_put = (common + interest * cumulative_normal(-d2)) / DAYS_PER_YEAR

        vanna = -pdf_d1 * d2 / sigma if sigma != 0.0 else 0.0

        if T <= 0.0:
            charm_call = charm_put = 0.0
        else:
            charm_common = -pdf_d1 * (2.0 * r * T - d2 * sigma * sqrt_t) / (2.0 * T * sigma * sqrt_t)
            charm_call = charm_common / DAYS_PER_YEAR
            charm_put = (charm_common + pdf_d1 * 2.0 * r / (sigma * sqrt_t)) / DAYS_PER_YEAR

        self.greeks = Greeks(
            delta_call=delta_call,
            delta_put=delta_put,
            gamma=gamma,
            vega_call=vega,
            vega_put=vega,
            theta_call=theta_call,
            theta_put=theta_put,
            vanna_call=vanna,
            vanna_put=vanna,
            charm_call=charm_call,
            charm_put=charm_put,
            hull_white_delta_call=self.hull_white_delta(delta_call, vega, is_call=True),
            hull_white_delta_put=self.hull_white_delta(delta_put, vega, is_call=False),
        )
        return self.greeks

    def hull_white_delta(self, delta: float, vega: float, is_call: bool) -> float:
        """Minimum-variance delta Δ + vega·∂σ/∂S, kept inside the delta range."""
        if self.spot_vol_slope == 0.0:
            return delta
        adjusted = delta + vega * self.spot_vol_slope
        if is_call:
            return min(max(adjusted, 0.0), 1.0)
        return min(max(adjusted, -1.0), 0.0)

    # ═══════════════════════════════════════════════════════════════════════
    # Implied volatility
    # ═══════════════════════════════════════════════════════════════════════

    def _model_price(self, sigma: float, is_call: bool) -> float:
        c = self.contract
        d1, d2 = d1_d2(c.S, c.K, c.r, c.T, sigma)
        if is_call:
            return call_value(c.S, c.K, c.r, c.T, d1, d2)
        return put_value(c.S, c.K, c.r, c.T, d1, d2)

    def implied_volatility_bisection(self, option_price: float, is_call: bool = True) -> float:
        """
        Implied volatility by bisection.

        Raises:
            BracketExhaustedError: upper bracket passed 1e10 without covering
                the target price
        """
        sigma_low = 1e-5
        sigma_high = 0.3

        price = self._model_price(sigma_high, is_call)
        while price < option_price:
            sigma_high *= 2.0
            price = self._model_price(sigma_high, is_call)
            if sigma_high > IV_SIGMA_CEILING:
                raise BracketExhaustedError(
                    f"Upper volatility {sigma_high:.3g} exceeds {IV_SIGMA_CEILING:.0e}"
                )

        for i in range(IV_MAX_ITERATIONS):
            sigma = (sigma_low + sigma_high) * 0.5
            diff = self._model_price(sigma, is_call) - option_price
            if abs(diff) < self.iv_accuracy:
                self.iteration_count = i
                return sigma
            if diff < 0.0:
                sigma_low = sigma
            else:
                sigma_high = sigma

        return (sigma_low + sigma_high) * 0.5

    def _vega(self, sigma: float) -> float:
        c = self.contract
        d1, _ = d1_d2(c.S, c.K, c.r, c.T, sigma)
        return c.S * math.exp(-d1 * d1 / 2.0) / SQRT_2PI * math.sqrt(c.T)

    def implied_volatility_newton(
        self,
        option_price: float,
        is_call: bool = True,
        initial_guess: Optional[float] = None,
    ) -> float:
        """
        Implied volatility by Newton-Raphson on the analytic vega.

        The default start is the Brenner-Subrahmanyam estimate
        √(2π/T)·price/S. Far from the money its vega underflows, and the
        search starts from the vega inflection point √(2|ln(S/K) + rT|/T)
        instead. A caller-supplied start with vanishing vega is returned
        unchanged.

        Each iterate narrows a [1e-5, 5] bracket on the sign of the pricing
        error; a step that leaves the bracket, or meets vanishing vega, is
        replaced by the bracket midpoint. After 100 iterations the current
        estimate is returned.
        """
        c = self.contract
        S, T = c.S, c.T

        caller_start = initial_guess is not None and initial_guess > 0.0
        if caller_start:
            sigma = initial_guess
        else:
            sigma = math.sqrt(2.0 * math.pi / T) * (option_price / S)

        if sigma < 0.001:
            sigma = 0.2
        if sigma > NEWTON_SIGMA_CEILING:
            sigma = 0.5

        if not caller_start and self._vega(sigma) < NEWTON_MIN_VEGA:
            sigma = inflection_volatility(c)

        lo, hi = NEWTON_SIGMA_FLOOR, NEWTON_SIGMA_CEILING
        for i in range(IV_MAX_ITERATIONS):
            diff = self._model_price(sigma, is_call) - option_price

            if abs(diff) < self.iv_accuracy:
                self.iteration_count = i
                return sigma

            if diff < 0.0:
                lo = sigma
            else:
                hi = sigma

            vega = self._vega(sigma)
            if vega < NEWTON_MIN_VEGA:
                if i == 0 and caller_start:
                    logger.debug("Newton IV stopped on vanishing vega at σ=%.6f", sigma)
                    self.iteration_count = i
                    return sigma
                sigma = (lo + hi) * 0.5
                continue

            step = sigma - diff / vega
            sigma = step if lo < step < hi else (lo + hi) * 0.5

        logger.debug("Newton IV hit %d iterations at σ=%.6f", IV_MAX_ITERATIONS, sigma)
        self.iteration_count = IV_MAX_ITERATIONS
        return sigma

    def implied_volatility_fast(self, option_price: float, is_call: bool = True) -> float:
        guess = initial_iv_guess(self.contract, option_price, is_call)
        return self.implied_volatility_newton(option_price, is_call, initial_guess=guess)
