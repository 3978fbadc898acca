"""
Pricing result containers.

OptionValues and Greeks are always derived from the current parameters and
never set independently. ``Ok`` / ``Unstable`` tag the outcome of a pricing
path that can fail numerically, so the engine decides on a fallback
explicitly instead of inspecting sentinel values.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Union


@dataclass(frozen=True)
class OptionValues:
    """Call and put value for one contract."""
    call: float
    put: float

    def is_finite(self) -> bool:
        return math.isfinite(self.call) and math.isfinite(self.put)

    def to_dict(self) -> Dict[str, float]:
        return {'call': self.call, 'put': self.put}


@dataclass(frozen=True)
class Ok:
    values: OptionValues


@dataclass(frozen=True)
class Unstable:
    reason: str


PriceOutcome = Union[Ok, Unstable]


@dataclass(frozen=True)
class Greeks:
    """
    Option sensitivities.

    Units:
        delta       per 1.00 move in spot
        gamma       per 1.00 move in spot, squared
        vega        per 1 volatility point (0.01)
        theta       per calendar day
        vanna       change in delta per 1.00 change in volatility
        charm       change in delta per calendar day
    """
    delta_call: float = 0.0
    delta_put: float = 0.0
    gamma: float = 0.0
    vega_call: float = 0.0
    vega_put: float = 0.0
    theta_call: float = 0.0
    theta_put: float = 0.0
    vanna_call: float = 0.0
    vanna_put: float = 0.0
    charm_call: float = 0.0
    charm_put: float = 0.0
    hull_white_delta_call: float = 0.0
    hull_white_delta_put: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)
