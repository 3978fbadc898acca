"""
═══════════════════════════════════════════════════════════════════════════════
OPTION ENGINES - European Option Pricing under Four Models
═══════════════════════════════════════════════════════════════════════════════

Black-Scholes, Heston stochastic volatility, Bates (Heston with jumps) and
Variance Gamma pricers sharing one contract type, one result type and one
finite-difference Greeks engine.

Modules:
    backend.core        - Contract terms, parameters, results, errors
    backend.solvers     - Pricing engines (closed form, Fourier, COS, Monte Carlo)
    backend.calibration - Grid calibration to put prices, VG fit to returns
    backend.greeks      - Finite-difference Greeks for any pricer
    backend.risk        - Position Greeks and P&L risk curves
    tests               - Validation tests

Usage:
    from option_engines import HestonEngine, OptionContract, get_default_params

    contract = OptionContract.from_days(S=100, K=100, r=0.05, days=30)
    engine = HestonEngine(contract, get_default_params())
    values = engine.calculate_price()
    greeks = engine.calculate_all()

═══════════════════════════════════════════════════════════════════════════════
"""

__version__ = '1.0.0'
__author__ = 'Option Engines'

from .backend.core.parameters import (
    OptionContract,
    HestonParams,
    BatesParams,
    JumpParams,
    VarianceGammaParams,
    HestonExtensions,
    IntegrationMethod,
    ModelType,
    get_default_params,
)
from .backend.core.errors import CancellationToken, OperationCancelledError
from .backend.solvers.black_scholes import BlackScholesEngine
from .backend.solvers.heston import HestonEngine
from .backend.solvers.bates import BatesEngine
from .backend.solvers.variance_gamma import VarianceGammaEngine
from .backend.calibration.vg_fitter import VarianceGammaFitter
