"""
Position Greeks and Risk Curves

═══════════════════════════════════════════════════════════════════════════════
AGGREGATION
═══════════════════════════════════════════════════════════════════════════════

   Stock / future          Δ += size
   Option / future option  Δ += δ·size,  Γ += γ·size,  V += ν·size,
                           Vanna += vanna·size,  Θ += θ·size·multiplier

   Charm is estimated from theta, the share of the option value that decays
   per day moving delta toward its expiry value:

     |δ| < 0.5   charm -= δ·(|θ| / price)·size
     otherwise   charm += (±1 - δ)·(|θ| / extrinsic)·size

   with |θ| capped at the price (or at the extrinsic value).

═══════════════════════════════════════════════════════════════════════════════
RISK CURVE
═══════════════════════════════════════════════════════════════════════════════

   Total P&L of all positions for underlying prices mid·(1 ± width):

     linear   size·(P - market price)·multiplier
     options  [BS(P) - market price]·size·multiplier

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..core.parameters import OptionContract
from ..core.results import Greeks
from ..solvers.black_scholes import BlackScholesEngine, black_scholes_values

logger = logging.getLogger(__name__)


class AssetClass(Enum):
    STOCK = 'STK'
    BOND = 'BND'
    OPTION = 'OPT'
    FUTURE = 'FUT'
    FUTURE_OPTION = 'FOP'
    CONTRACT_FOR_DIFFERENCE = 'CFD'
    CASH = 'CASH'
    MUTUAL_FUND = 'FND'
    WARRANT = 'WAR'
    EXCHANGE_FOR_PHYSICAL = 'EFP'

    @property
    def is_option(self) -> bool:
        return self in (AssetClass.OPTION, AssetClass.FUTURE_OPTION)

    @property
    def is_linear(self) -> bool:
        return self in (AssetClass.STOCK, AssetClass.FUTURE)


@dataclass(frozen=True)
class Contract:
    symbol: str
    asset_class: AssetClass
    strike: Optional[float] = None
    is_call: Optional[bool] = None
    multiplier: float = 1.0
    expiration: Optional[date] = None

    def days_to_expiry(self, today: date) -> float:
        if self.expiration is None:
            return 0.0
        return max(0.0, float((self.expiration - today).days))


@dataclass
class Position:
    """
    Holding in one contract.

    ``volatility`` is the implied volatility used for repricing; when None it
    is implied from ``market_price``. ``greeks`` is filled by
    ``position_greeks``.
    """
    contract: Contract
    size: float
    market_price: float
    underlying_price: Optional[float] = None
    volatility: Optional[float] = None
    greeks: Optional[Greeks] = None

    @property
    def is_call(self) -> bool:
        return bool(self.contract.is_call)

    def intrinsic_value(self, underlying_price: float) -> float:
        if self.is_call:
            return max(underlying_price - self.contract.strike, 0.0)
        return max(self.contract.strike - underlying_price, 0.0)


@dataclass
class PortfolioGreeks:
    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    vanna: float = 0.0
    charm: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            'delta': self.delta,
            'gamma': self.gamma,
            'theta': self.theta,
            'vega': self.vega,
            'vanna': self.vanna,
            'charm': self.charm,
        }


def _option_contract(position: Position, underlying_price: float, r: float, today: date) -> OptionContract:
    days = position.contract.days_to_expiry(today)
    return OptionContract.from_days(underlying_price, position.contract.strike, r, days)


def _volatility(position: Position, engine: BlackScholesEngine) -> float:
    if position.volatility is not None:
        return position.volatility
    if engine.contract.is_expired:
        return 0.0
    return engine.implied_volatility_newton(position.market_price, position.is_call)


def position_greeks(position: Position, underlying_price: float, r: float,
                    today: Optional[date] = None) -> Greeks:
    """
    Black-Scholes Greeks of an option position (per unit); also stored on
    ``position.greeks``. Linear positions get Δ = 1.

    Raises:
        ValueError: an option position has no strike, call flag or expiry
    """
    today = today or date.today()
    if position.contract.asset_class.is_linear:
        position.greeks = Greeks(delta_call=1.0, delta_put=1.0)
        return position.greeks
    if not position.contract.asset_class.is_option:
        position.greeks = Greeks()
        return position.greeks

    c = position.contract
    if c.strike is None or c.is_call is None or c.expiration is None:
        raise ValueError(f"Option position {c.symbol} needs strike, call/put flag and expiration")

    contract = _option_contract(position, underlying_price, r, today)
    if contract.is_expired:
        call_delta = 1.0 if contract.S > contract.K else 0.0
        position.greeks = Greeks(delta_call=call_delta, delta_put=call_delta - 1.0)
        return position.greeks

    engine = BlackScholesEngine(contract)
    engine.volatility = _volatility(position, engine)
    position.greeks = engine.calculate_all()
    return position.greeks


def _side(greeks: Greeks, is_call: bool) -> Tuple[float, float, float, float]:
    if is_call:
        return greeks.delta_call, greeks.theta_call, greeks.vega_call, greeks.vanna_call
    return greeks.delta_put, greeks.theta_put, greeks.vega_put, greeks.vanna_put


def estimate_charm(delta: float, theta: float, market_price: float, extrinsic: float,
                   is_call: bool, size: float) -> float:
    """Charm contribution of one option position from its theta."""
    if market_price == 0:
        return 0.0
    abs_theta = min(abs(theta), market_price)
    if -0.5 < delta < 0.5:
        return -delta * (abs_theta / market_price) * size
    extrinsic = max(extrinsic, 0.0)
    if extrinsic <= 0:
        return 0.0
    abs_theta = min(abs_theta, extrinsic)
    target = 1.0 if is_call else -1.0
    return (target - delta) * (abs_theta / extrinsic) * size


def aggregate_greeks(positions: Iterable[Position], underlying_price: float) -> PortfolioGreeks:
    """
    Sum position Greeks. Option positions must already carry ``greeks``;
    those without are skipped with a warning.
    """
    total = PortfolioGreeks()
    for position in positions:
        asset_class = position.contract.asset_class
        if asset_class.is_linear:
            total.delta += position.size
            continue
        if not asset_class.is_option:
            continue
        if position.greeks is None:
            logger.warning("No greeks for position %s; skipped", position.contract.symbol)
            continue

        delta, theta, vega, vanna = _side(position.greeks, position.is_call)
        size = position.size
        total.delta += delta * size
        total.gamma += position.greeks.gamma * size
        total.theta += theta * size * position.contract.multiplier
        total.vega += vega * size
        total.vanna += vanna * size

        extrinsic = position.market_price - position.intrinsic_value(underlying_price)
        total.charm += estimate_charm(delta, theta, position.market_price, extrinsic,
                                      position.is_call, size)
    return total


@dataclass
class RiskCurve:
    """P&L by underlying price; the first value recorded for a price wins."""
    _points: Dict[float, float] = field(default_factory=dict)
    max_pl: float = -math.inf
    min_pl: float = math.inf

    def add(self, price: float, total_pl: float) -> None:
        if price in self._points:
            return
        self._points[price] = total_pl
        self.max_pl = max(self.max_pl, total_pl)
        self.min_pl = min(self.min_pl, total_pl)

    @property
    def points(self) -> List[Tuple[float, float]]:
        return sorted(self._points.items())

    def to_dict(self) -> Dict:
        return {
            'points': [{'price': p, 'pl': pl} for p, pl in self.points],
            'max_pl': self.max_pl,
            'min_pl': self.min_pl,
        }


def position_pl(position: Position, price: float, r: float, today: date,
                volatility: Optional[float] = None) -> float:
    """
    P&L of one position if the underlying were at ``price``.

    An option priced with ``volatility=None`` uses the position's own
    volatility, or one implied from its market price at ``price``.
    """
    c = position.contract
    if c.asset_class.is_linear:
        return position.size * (price - position.market_price) * c.multiplier
    if not c.asset_class.is_option:
        return 0.0

    contract = _option_contract(position, price, r, today)
    if volatility is None:
        volatility = _volatility(position, BlackScholesEngine(contract))
    values = black_scholes_values(contract.S, contract.K, contract.r, contract.T, volatility)
    value = values.call if position.is_call else values.put
    return (value - position.market_price) * position.size * c.multiplier


def build_risk_curve(
    positions: List[Position],
    mid_price: float,
    r: float,
    width: float = 0.05,
    increments: int = 100,
    today: Optional[date] = None,
) -> RiskCurve:
    """
    Sweep the underlying across mid·(1 - width) .. mid·(1 + width).

    Option volatilities are taken from the position, or implied once at
    ``mid_price`` from the market price.
    """
    if mid_price <= 0:
        raise ValueError(f"mid_price must be positive, got {mid_price}")
    if increments < 1:
        raise ValueError(f"increments must be at least 1, got {increments}")
    today = today or date.today()

    vols = {}
    for i, position in enumerate(positions):
        if position.contract.asset_class.is_option:
            engine = BlackScholesEngine(_option_contract(position, mid_price, r, today))
            vols[i] = _volatility(position, engine)

    curve = RiskCurve()
    for price in np.linspace(mid_price * (1.0 - width), mid_price * (1.0 + width), increments + 1):
        price = float(price)
        total = sum(position_pl(p, price, r, today, vols.get(i)) for i, p in enumerate(positions))
        curve.add(price, total)

    logger.debug("Risk curve: %d points, P&L [%.2f, %.2f]",
                 len(curve.points), curve.min_pl, curve.max_pl)
    return curve
