"""
Model Parameters and Contract Terms

═══════════════════════════════════════════════════════════════════════════════
CONTRACT TERMS
═══════════════════════════════════════════════════════════════════════════════

Every pricer sees the same four numbers:

   S  spot price of the underlying
   K  strike
   r  continuously compounded risk-free rate
   T  time to expiry in years, T = days / 365

Derived quantities used throughout:

   intrinsic call    max(S - K, 0)
   intrinsic put     max(K - S, 0)
   discount factor   e^{-rT}
   moneyness         S / K        (> 1: puts out of the money)

═══════════════════════════════════════════════════════════════════════════════
HESTON STOCHASTIC VOLATILITY
═══════════════════════════════════════════════════════════════════════════════

   dS_t = r S_t dt + √V_t S_t dW_S
   dV_t = κ(θ - V_t)dt + ξ√V_t dW_V,      E[dW_S dW_V] = ρ dt

   V0    initial variance            (current volatility = √V0)
   θ     long-term variance          (long-term volatility = √θ)
   κ     mean reversion speed
   ξ     volatility of volatility    (stored as ``sigma``)
   ρ     spot / variance correlation

FELLER CONDITION:  2κθ ≥ ξ²
   Ratio F = 2κθ/ξ². For F < 1 the variance process can touch zero.

═══════════════════════════════════════════════════════════════════════════════
BATES (SVJ) JUMPS
═══════════════════════════════════════════════════════════════════════════════

   Compound Poisson jumps in log price, intensity λ, log jump size
   Y ~ N(μ_J, σ_J²). Mean relative jump k_J = e^{μ_J + σ_J²/2} - 1.

═══════════════════════════════════════════════════════════════════════════════
VARIANCE GAMMA
═══════════════════════════════════════════════════════════════════════════════

   X_t = θ G_t + σ W(G_t),   G_t ~ Gamma with mean t and variance ν t

   σ  volatility of the Brownian part
   ν  variance rate of the gamma clock (kurtosis)
   θ  drift of the subordinated Brownian motion (skew)

═══════════════════════════════════════════════════════════════════════════════
"""

import math
import warnings
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Tuple

DAYS_PER_YEAR = 365.0
BUSINESS_DAYS_PER_YEAR = 252.0

# Below this expiry every pricer returns intrinsic value
EXPIRY_EPSILON = 1e-6


class ModelType(Enum):
    STANDARD_HESTON = 'standard_heston'
    JUMP_DIFFUSION_HESTON = 'jump_diffusion_heston'
    VARIANCE_GAMMA = 'variance_gamma'
    ASYMMETRIC_LAPLACE = 'asymmetric_laplace'


class IntegrationMethod(Enum):
    ADAPTIVE = 'adaptive'
    FIXED = 'fixed'
    APPROXIMATION = 'approximation'


@dataclass(frozen=True)
class OptionContract:
    """
    Terms of one European option, shared by call and put.

    Attributes:
        S: Spot price
        K: Strike
        r: Risk-free rate (continuous compounding)
        T: Time to expiry in years
    """
    S: float
    K: float
    r: float
    T: float

    def __post_init__(self):
        assert self.S > 0, f"S must be positive, got {self.S}"
        assert self.K > 0, f"K must be positive, got {self.K}"
        assert self.T >= 0, f"T must be non-negative, got {self.T}"

    @classmethod
    def from_days(cls, S: float, K: float, r: float, days: float) -> 'OptionContract':
        return cls(S=S, K=K, r=r, T=days / DAYS_PER_YEAR)

    @property
    def days_left(self) -> float:
        return self.T * DAYS_PER_YEAR

    @property
    def working_expiry(self) -> float:
        """Expiry in trading years: weekends removed, 252 trading days."""
        d = self.days_left
        return (d - d / 7.0 * 2.0) / BUSINESS_DAYS_PER_YEAR

    @property
    def intrinsic_call(self) -> float:
        return max(self.S - self.K, 0.0)

    @property
    def intrinsic_put(self) -> float:
        return max(self.K - self.S, 0.0)

    @property
    def discount_factor(self) -> float:
        return math.exp(-self.r * self.T)

    @property
    def moneyness(self) -> float:
        return self.S / self.K

    @property
    def is_expired(self) -> bool:
        return self.T <= EXPIRY_EPSILON

    def with_spot(self, S: float) -> 'OptionContract':
        return replace(self, S=S)

    def with_expiry(self, T: float) -> 'OptionContract':
        return replace(self, T=T)

    def to_dict(self) -> Dict[str, float]:
        return {'S': self.S, 'K': self.K, 'r': self.r, 'T': self.T,
                'days': self.days_left}


@dataclass(frozen=True)
class HestonParams:
    """
    Heston variance-process parameters.

    V0 and theta are variances. ``from_volatilities`` builds an instance from
    the volatility quotes traders usually carry.
    """

    V0: float      # initial variance
    theta: float   # long-term variance
    kappa: float   # mean reversion speed
    sigma: float   # vol-of-vol ξ
    rho: float     # correlation

    def __post_init__(self):
        assert self.V0 >= 0, f"V₀ must be non-negative, got {self.V0}"
        assert self.theta >= 0, f"θ must be non-negative, got {self.theta}"
        assert self.kappa >= 0, f"κ must be non-negative, got {self.kappa}"
        assert self.sigma >= 0, f"ξ must be non-negative, got {self.sigma}"
        assert -1 <= self.rho <= 1, f"ρ must be in [-1, 1], got {self.rho}"

    @classmethod
    def from_volatilities(cls, current_vol: float, long_term_vol: float,
                          kappa: float, sigma: float, rho: float) -> 'HestonParams':
        return cls(V0=current_vol ** 2, theta=long_term_vol ** 2,
                   kappa=kappa, sigma=sigma, rho=rho)

    @property
    def current_volatility(self) -> float:
        return math.sqrt(self.V0)

    @property
    def long_term_volatility(self) -> float:
        return math.sqrt(self.theta)

    @property
    def feller_ratio(self) -> float:
        """F = 2κθ/ξ²; infinite for ξ = 0."""
        if self.sigma == 0:
            return math.inf
        return 2.0 * self.kappa * self.theta / self.sigma ** 2

    @property
    def feller_satisfied(self) -> bool:
        return 2.0 * self.kappa * self.theta >= self.sigma ** 2

    def warn_if_feller_violated(self) -> None:
        if not self.feller_satisfied:
            warnings.warn(
                f"⚠️  FELLER CONDITION VIOLATED!\n"
                f"    2κθ = {2.0 * self.kappa * self.theta:.6f}\n"
                f"    ξ²  = {self.sigma ** 2:.6f}\n"
                f"    Ratio 2κθ/ξ² = {self.feller_ratio:.4f} < 1\n"
                f"    Variance V_t may reach zero with positive probability."
            )

    @property
    def volatility(self) -> float:
        return self.current_volatility

    def with_volatility(self, vol: float) -> 'HestonParams':
        return replace(self, V0=vol * vol)

    def expected_variance(self, t: float) -> float:
        """E[V_t | V₀] = θ + (V₀ - θ)e^{-κt}"""
        return self.theta + (self.V0 - self.theta) * math.exp(-self.kappa * t)

    def to_dict(self) -> Dict[str, float]:
        return {
            'V0': self.V0,
            'theta': self.theta,
            'kappa': self.kappa,
            'sigma': self.sigma,
            'rho': self.rho,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> 'HestonParams':
        """
        Accepts either variances (V0, theta) or volatilities
        (current_vol, long_term_vol).
        """
        if 'current_vol' in d or 'long_term_vol' in d:
            return cls.from_volatilities(
                current_vol=float(d['current_vol']),
                long_term_vol=float(d['long_term_vol']),
                kappa=float(d['kappa']),
                sigma=float(d['sigma']),
                rho=float(d['rho']),
            )
        return cls(
            V0=float(d['V0']),
            theta=float(d['theta']),
            kappa=float(d['kappa']),
            sigma=float(d['sigma']),
            rho=float(d['rho']),
        )

    def __repr__(self) -> str:
        feller_status = "✓" if self.feller_satisfied else "✗"
        return (
            f"HestonParams(v₀={self.current_volatility:.4f}, "
            f"v∞={self.long_term_volatility:.4f}, κ={self.kappa:.4f}, "
            f"ξ={self.sigma:.4f}, ρ={self.rho:.4f}, Feller {feller_status})"
        )


@dataclass(frozen=True)
class JumpParams:
    """Log-normal compound Poisson jumps: intensity λ, mean μ_J, volatility σ_J."""
    intensity: float
    mean: float
    volatility: float

    def __post_init__(self):
        assert self.intensity >= 0, f"λ must be non-negative, got {self.intensity}"
        assert self.volatility >= 0, f"σ_J must be non-negative, got {self.volatility}"

    @property
    def mean_relative_jump(self) -> float:
        """k_J = E[e^Y] - 1"""
        return math.exp(self.mean + 0.5 * self.volatility ** 2) - 1.0

    def to_dict(self) -> Dict[str, float]:
        return {'intensity': self.intensity, 'mean': self.mean,
                'volatility': self.volatility}

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> 'JumpParams':
        return cls(intensity=float(d['intensity']), mean=float(d['mean']),
                   volatility=float(d['volatility']))


@dataclass(frozen=True)
class HestonExtensions:
    """Heuristic add-ons for the non-standard Heston variants."""
    jumps_enabled: bool = False
    jump_intensity: float = 0.5
    mean_jump_size: float = -0.03
    jump_volatility: float = 0.15
    tail_asymmetry: float = -0.3
    kurtosis_enhancement: float = 0.1

    def __post_init__(self):
        assert -1 < self.tail_asymmetry < 1, \
            f"tail asymmetry must be in (-1, 1), got {self.tail_asymmetry}"
        assert self.jump_intensity >= 0, f"λ must be non-negative, got {self.jump_intensity}"


@dataclass(frozen=True)
class BatesParams:
    """Heston diffusion plus jumps."""
    heston: HestonParams
    jumps: JumpParams

    @property
    def volatility(self) -> float:
        return self.heston.current_volatility

    def with_volatility(self, vol: float) -> 'BatesParams':
        return replace(self, heston=self.heston.with_volatility(vol))

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {'heston': self.heston.to_dict(), 'jumps': self.jumps.to_dict()}


@dataclass(frozen=True)
class VarianceGammaParams:
    sigma: float
    nu: float
    theta: float

    def __post_init__(self):
        assert self.sigma >= 0, f"σ must be non-negative, got {self.sigma}"
        assert self.nu >= 0, f"ν must be non-negative, got {self.nu}"

    @property
    def volatility(self) -> float:
        return self.sigma

    def with_volatility(self, vol: float) -> 'VarianceGammaParams':
        return replace(self, sigma=vol)

    def to_dict(self) -> Dict[str, float]:
        return {'sigma': self.sigma, 'nu': self.nu, 'theta': self.theta}

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> 'VarianceGammaParams':
        return cls(sigma=float(d['sigma']), nu=float(d['nu']),
                   theta=float(d['theta']))


@dataclass(frozen=True)
class BlackScholesParams:
    """Flat volatility; lets Black-Scholes share the generic Greeks code."""
    sigma: float

    @property
    def volatility(self) -> float:
        return self.sigma

    def with_volatility(self, vol: float) -> 'BlackScholesParams':
        return replace(self, sigma=vol)


# ═══════════════════════════════════════════════════════════════════════════════
# TYPICAL PARAMETER SETS
# ═══════════════════════════════════════════════════════════════════════════════

def get_default_params() -> HestonParams:
    """
    Equity-like Heston set: 20% vol, moderate vol-of-vol, strong negative
    correlation. Satisfies the Feller condition.
    """
    return HestonParams.from_volatilities(
        current_vol=0.2,
        long_term_vol=0.2,
        kappa=2.0,
        sigma=0.3,
        rho=-0.7,
    )


def get_default_bates_params() -> BatesParams:
    """Bates defaults: Heston (0.2, 0.2, 1.5, 0.3, -0.7), λ=0.5, μ_J=-0.05, σ_J=0.15."""
    return BatesParams(
        heston=HestonParams.from_volatilities(
            current_vol=0.2, long_term_vol=0.2, kappa=1.5, sigma=0.3, rho=-0.7),
        jumps=get_default_jump_params(),
    )


def get_default_jump_params() -> JumpParams:
    return JumpParams(intensity=0.5, mean=-0.05, volatility=0.15)


def get_default_vg_params() -> VarianceGammaParams:
    return VarianceGammaParams(sigma=0.2, nu=0.2, theta=-0.1)


def get_heston_calibration_grid() -> Dict[str, Tuple[float, float]]:
    """
    Starting ranges for the Heston grid search. Volatility axes are quoted as
    volatilities, not variances; each axis starts with five equal steps.

    ═══════════════════════════════════════════════════════════════════════════
    long_term_vol  [0.03, 0.5]
    kappa          [0.1, 100]
    sigma          [0.1, 2.0]
    rho            [-1, 1]
    current_vol    [0.03, 0.4]
    ═══════════════════════════════════════════════════════════════════════════
    """
    return {
        'long_term_vol': (0.03, 0.5),
        'kappa': (0.1, 100.0),
        'sigma': (0.1, 2.0),
        'rho': (-1.0, 1.0),
        'current_vol': (0.03, 0.4),
    }
