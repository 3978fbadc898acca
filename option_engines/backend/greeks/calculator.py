"""
Finite-Difference Greeks for Any Pricer

═══════════════════════════════════════════════════════════════════════════════
OPTION GREEKS BY BUMP-AND-REPRICE
═══════════════════════════════════════════════════════════════════════════════

Every engine in this package exposes two pure functions of a contract and a
frozen parameter set:

   price(contract, params)  -> OptionValues(call, put)
   delta(contract, params)  -> (Δ_call, Δ_put)

Delta is model specific (Heston falls back to an analytic delta, Bates can
use a COS series), so it is taken from the pricer. Everything else is a
bump of the contract or of the parameters' current volatility:

1. GAMMA (spot bump h):
   Γ ≈ [C(S+h) - 2C(S) + C(S-h)] / h²

2. VEGA (volatility bump ε = 0.01, quoted per volatility point):
   ν ≈ [V(σ+ε) - V(σ-ε)] / (2ε · 100)

3. THETA (time bump b = min(1/365, T/10), per calendar day):
   Θ ≈ [V(T-b) - V(T)] / (b · 365)          0 when T ≤ b

4. VANNA:
   ∂Δ/∂σ ≈ [Δ(σ+ε) - Δ(σ)] / ε

5. CHARM (per calendar day):
   ∂Δ/∂t ≈ [Δ(T-b) - Δ(T)] / (b · 365)      0 when T ≤ b

Bumped inputs are new frozen instances built with ``dataclasses.replace``;
nothing the caller holds is modified.

═══════════════════════════════════════════════════════════════════════════════
"""

from typing import Protocol, Tuple

from ..core.parameters import OptionContract, DAYS_PER_YEAR
from ..core.results import OptionValues, Greeks


class VolatilityParams(Protocol):
    @property
    def volatility(self) -> float: ...

    def with_volatility(self, vol: float): ...


class Pricer(Protocol):
    """Capability shared by every engine."""

    def price(self, contract: OptionContract, params) -> OptionValues: ...

    def delta(self, contract: OptionContract, params) -> Tuple[float, float]: ...


def time_bump(T: float) -> float:
    return min(1.0 / DAYS_PER_YEAR, T * 0.1)


class GreeksCalculator:
    """
    Finite-difference Greeks on top of a ``Pricer``.

    Attributes:
        gamma_bump: Absolute spot bump for gamma
        vol_bump: Absolute volatility bump for vega and vanna
    """

    def __init__(self, pricer: Pricer, gamma_bump: float = 1.0, vol_bump: float = 0.01):
        self.pricer = pricer
        self.gamma_bump = gamma_bump
        self.vol_bump = vol_bump

    def gamma(self, contract: OptionContract, params, mid: OptionValues = None) -> float:
        h = self.gamma_bump
        if mid is None:
            mid = self.pricer.price(contract, params)
        up = self.pricer.price(contract.with_spot(contract.S + h), params)
        down = self.pricer.price(contract.with_spot(contract.S - h), params)
        return (up.call - 2.0 * mid.call + down.call) / (h * h)

    def vega(self, contract: OptionContract, params: VolatilityParams) -> Tuple[float, float]:
        vol = params.volatility
        vol_up = vol + self.vol_bump
        vol_down = max(vol - self.vol_bump, 0.0)

        up = self.pricer.price(contract, params.with_volatility(vol_up))
        down = self.pricer.price(contract, params.with_volatility(vol_down))

        scale = (vol_up - vol_down) * 100.0
        return (up.call - down.call) / scale, (up.put - down.put) / scale

    def theta(self, contract: OptionContract, params, mid: OptionValues = None) -> Tuple[float, float]:
        b = time_bump(contract.T)
        if contract.T <= b:
            return 0.0, 0.0
        if mid is None:
            mid = self.pricer.price(contract, params)
        earlier = self.pricer.price(contract.with_expiry(contract.T - b), params)
        scale = b * DAYS_PER_YEAR
        return (earlier.call - mid.call) / scale, (earlier.put - mid.put) / scale

    def vanna(self, contract: OptionContract, params: VolatilityParams,
              base: Tuple[float, float] = None) -> Tuple[float, float]:
        if base is None:
            base = self.pricer.delta(contract, params)
        up = self.pricer.delta(contract, params.with_volatility(params.volatility + self.vol_bump))
        return (up[0] - base[0]) / self.vol_bump, (up[1] - base[1]) / self.vol_bump

    def charm(self, contract: OptionContract, params,
              base: Tuple[float, float] = None) -> Tuple[float, float]:
        b = time_bump(contract.T)
        if contract.T <= b:
            return 0.0, 0.0
        if base is None:
            base = self.pricer.delta(contract, params)
        earlier = self.pricer.delta(contract.with_expiry(contract.T - b), params)
        scale = b * DAYS_PER_YEAR
        return (earlier[0] - base[0]) / scale, (earlier[1] - base[1]) / scale

    def all_greeks(self, contract: OptionContract, params) -> Greeks:
        """All sensitivities for one contract."""
        mid = self.pricer.price(contract, params)
        delta_call, delta_put = self.pricer.delta(contract, params)

        vega_call, vega_put = self.vega(contract, params)
        theta_call, theta_put = self.theta(contract, params, mid)
        vanna_call, vanna_put = self.vanna(contract, params, (delta_call, delta_put))
        charm_call, charm_put = self.charm(contract, params, (delta_call, delta_put))

        return Greeks(
            delta_call=delta_call,
            delta_put=delta_put,
            gamma=self.gamma(contract, params, mid),
            vega_call=vega_call,
            vega_put=vega_put,
            theta_call=theta_call,
            theta_put=theta_put,
            vanna_call=vanna_call,
            vanna_put=vanna_put,
            charm_call=charm_call,
            charm_put=charm_put,
            hull_white_delta_call=delta_call,
            hull_white_delta_put=delta_put,
        )


def finite_difference_greeks(
    pricer: Pricer,
    contract: OptionContract,
    params,
    gamma_bump: float = 1.0,
    vol_bump: float = 0.01,
) -> Greeks:
    """Convenience wrapper around ``GreeksCalculator.all_greeks``."""
    return GreeksCalculator(pricer, gamma_bump=gamma_bump, vol_bump=vol_bump).all_greeks(contract, params)
