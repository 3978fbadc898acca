import math
from datetime import date, timedelta
from typing import Tuple, Dict, List, Sequence

import numpy as np

from ...backend.core.parameters import (
    OptionContract,
    HestonParams,
    JumpParams,
    BatesParams,
    VarianceGammaParams,
    BlackScholesParams,
    HestonExtensions,
    IntegrationMethod,
    ModelType,
    get_default_params,
    get_default_bates_params,
    get_default_vg_params,
)
from ...backend.core.errors import (
    CancellationToken,
    OperationCancelledError,
    PriceFileFormatError,
    BracketExhaustedError,
)
from ...backend.core.results import OptionValues, Ok, Unstable
from ...backend.solvers.black_scholes import BlackScholesEngine, black_scholes_values
from ...backend.solvers.heston import HestonEngine
from ...backend.solvers.bates import BatesEngine
from ...backend.solvers.variance_gamma import VarianceGammaEngine
from ...backend.solvers.monte_carlo import MonteCarloSimulator
from ...backend.greeks.calculator import GreeksCalculator, finite_difference_greeks
from ...backend.calibration.vg_fitter import VarianceGammaFitter


def is_numerically_stable(value: float, bound: float = 1e6) -> bool:
    return np.isfinite(value) and abs(value) <= bound


def atm_contract(days: float = 30.0, S: float = 100.0, r: float = 0.05) -> OptionContract:
    return OptionContract.from_days(S=S, K=S, r=r, days=days)


def parity_error(contract: OptionContract, values: OptionValues) -> float:
    """|C - P - (S - K·e^{-rT})|"""
    target = contract.S - contract.K * math.exp(-contract.r * contract.T)
    return abs(values.call - values.put - target)


def near_black_scholes_heston(vol: float = 0.2, xi: float = 0.01) -> HestonParams:
    """Flat variance, negligible vol-of-vol, no correlation."""
    return HestonParams.from_volatilities(current_vol=vol, long_term_vol=vol,
                                          kappa=5.0, sigma=xi, rho=0.0)


def write_price_file(path, closes: Sequence, header: str = "Date,Open,High,Low,Close") -> str:
    lines = [header]
    for i, close in enumerate(closes):
        day = date(2024, 1, 1) + timedelta(days=i)
        lines.append(f"{day.isoformat()},1,1,1,{close}")
    path.write_text("\n".join(lines) + "\n")
    return str(path)


def random_walk_prices(n: int = 60, seed: int = 3, start: float = 100.0,
                       daily_vol: float = 0.01) -> List[float]:
    rng = np.random.default_rng(seed)
    returns = rng.normal(0.0, daily_vol, n - 1)
    return list(start * np.exp(np.concatenate([[0.0], np.cumsum(returns)])))
