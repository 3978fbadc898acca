"""
Variance Gamma Fit to Historical Returns

═══════════════════════════════════════════════════════════════════════════════
1. METHOD OF MOMENTS (starting point)
═══════════════════════════════════════════════════════════════════════════════

   Sample variance s² (n - 1), adjusted skewness g₁ and kurtosis g₂:

   ν = clamp(max(0.1, g₂ - 3)/3, 0.01, 5)
   θ = clamp(clamp(g₁, -5, 5)/(3ν), -0.5, 0.5)
   σ = clamp(√max(0.01, s² - θ²ν), 0.05, 1)

   g₂ is already an excess kurtosis; subtracting 3 again keeps ν small for
   mildly fat-tailed data.

═══════════════════════════════════════════════════════════════════════════════
2. GRID SEARCH ON AN APPROXIMATE LOG-LIKELIHOOD
═══════════════════════════════════════════════════════════════════════════════

   Each return r over interval Δt contributes

     z  = (r/Δt - θ) / √((σ² + νθ²)Δt)
     ℓ  = -½ln(2π(σ² + νθ²)Δt) - ½z² - 0.1·ν·|z|

   Axes hold 50 evenly spaced points within ±min(0.8·centre, 0.3) of the
   moment estimate (plus the estimate itself), limited to

     ν ∈ [0.05, 5],   θ ∈ [-0.5, 0.5],   σ ∈ [0.05, 0.8]

   A point replaces the incumbent only on a strictly higher likelihood.

═══════════════════════════════════════════════════════════════════════════════
3. GOODNESS OF FIT
═══════════════════════════════════════════════════════════════════════════════

   GoF = exp(-(10·|θΔt - mean| + |(σ² + νθ²)Δt - s²| / s²)),  in [0, 1]

═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import csv
import itertools
import logging
import math
import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..core.errors import (
    CancellationToken,
    OperationCancelledError,
    PriceFileFormatError,
    check_cancelled,
)
from ..core.parameters import BUSINESS_DAYS_PER_YEAR, VarianceGammaParams

logger = logging.getLogger(__name__)

MIN_VARIANCE_RATE = 0.05
MAX_VARIANCE_RATE = 5.0
MIN_DRIFT = -0.5
MAX_DRIFT = 0.5
MIN_VOLATILITY = 0.05
MAX_VOLATILITY = 0.8

GRID_POINTS = 50
MIN_RETURNS = 10
MIN_PRICES = MIN_RETURNS + 1
MIN_COLUMNS = 5

DEFAULT_INTERVAL = 1.0 / BUSINESS_DAYS_PER_YEAR


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


@dataclass
class VarianceGammaFitResult:
    sigma: float
    nu: float
    theta: float
    log_likelihood: float
    goodness_of_fit: float
    iterations: int
    converged: bool
    observations: int = 0

    @property
    def params(self) -> VarianceGammaParams:
        return VarianceGammaParams(sigma=self.sigma, nu=self.nu, theta=self.theta)

    def to_dict(self) -> dict:
        return {
            'sigma': self.sigma,
            'nu': self.nu,
            'theta': self.theta,
            'log_likelihood': self.log_likelihood if math.isfinite(self.log_likelihood) else None,
            'goodness_of_fit': self.goodness_of_fit,
            'iterations': self.iterations,
            'converged': self.converged,
            'observations': self.observations,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SAMPLE STATISTICS
# ═══════════════════════════════════════════════════════════════════════════════

def sample_skewness(data: np.ndarray, mean: float, variance: float) -> float:
    if variance <= 0:
        return 0.0
    n = len(data)
    z = (data - mean) / math.sqrt(variance)
    return n / ((n - 1) * (n - 2)) * float(np.sum(z ** 3))


def sample_kurtosis(data: np.ndarray, mean: float, variance: float) -> float:
    """Bias-adjusted excess kurtosis; 3.0 for a degenerate sample."""
    if variance <= 0:
        return 3.0
    n = len(data)
    z = (data - mean) / math.sqrt(variance)
    kurtosis = n * (n + 1) / ((n - 1) * (n - 2) * (n - 3)) * float(np.sum(z ** 4))
    correction = 3.0 * (n - 1) ** 2 / ((n - 2) * (n - 3))
    return kurtosis - correction


def method_of_moments(log_returns: np.ndarray) -> Tuple[float, float, float]:
    """(sigma, nu, theta) starting estimate."""
    n = len(log_returns)
    mean = float(np.mean(log_returns))
    variance = float(np.sum((log_returns - mean) ** 2)) / (n - 1)
    skewness = sample_skewness(log_returns, mean, variance)
    kurtosis = sample_kurtosis(log_returns, mean, variance)

    excess_kurtosis = max(0.1, kurtosis - 3.0)
    nu = _clamp(excess_kurtosis / 3.0, 0.01, MAX_VARIANCE_RATE)
    theta = _clamp(_clamp(skewness, -5.0, 5.0) / (3.0 * nu), MIN_DRIFT, MAX_DRIFT)
    sigma = math.sqrt(max(0.01, variance - theta * theta * nu))
    sigma = _clamp(sigma, MIN_VOLATILITY, 1.0)
    return sigma, nu, theta


def log_likelihood(log_returns: np.ndarray, dt: float,
                   sigma: float, nu: float, theta: float) -> float:
    """Moment-matched normal likelihood with a ν-weighted fat-tail penalty."""
    if sigma <= 0 or nu <= 0:
        return -math.inf
    variance = (sigma * sigma + nu * theta * theta) * dt
    if variance <= 0:
        return -math.inf
    z = (log_returns / dt - theta) / math.sqrt(variance)
    total = float(np.sum(-0.5 * math.log(2.0 * math.pi * variance) - 0.5 * z * z - nu * 0.1 * np.abs(z)))
    return total if math.isfinite(total) else -math.inf


def create_range(center: float, lo: float, hi: float, count: int) -> List[float]:
    """Sorted distinct axis values around ``center`` inside [lo, hi]."""
    range_size = min(center * 0.8, 0.3)
    range_min = max(lo, center - range_size)
    range_max = min(hi, center + range_size)
    if range_min > range_max:
        range_min, range_max = range_max, range_min

    values = []
    if lo <= center <= hi:
        values.append(center)
    if count > 1 and range_max > range_min:
        step = (range_max - range_min) / (count - 1)
        values.extend(range_min + i * step for i in range(count))

    if not values:
        values.append(_clamp(center, lo, hi))
        if count > 1:
            values.append(_clamp((lo + hi) / 2.0, lo, hi))

    return sorted(set(values))


def log_returns_from_prices(prices: Sequence[float]) -> np.ndarray:
    """
    ln(Pᵢ / Pᵢ₋₁) for consecutive prices.

    Raises:
        ValueError: fewer than two prices, a non-positive price, or a
                    non-finite return
    """
    if len(prices) < 2:
        raise ValueError("Need at least 2 prices to calculate log returns")
    arr = np.asarray(prices, dtype=float)
    bad = np.flatnonzero(arr <= 0)
    if bad.size:
        raise ValueError(f"All prices must be positive. Found invalid price at position {bad[0]}")
    returns = np.log(arr[1:] / arr[:-1])
    bad = np.flatnonzero(~np.isfinite(returns))
    if bad.size:
        raise ValueError(f"Invalid log return calculated at position {bad[0]}")
    return returns


# ═══════════════════════════════════════════════════════════════════════════════
# CLOSE-PRICE FILES
# ═══════════════════════════════════════════════════════════════════════════════

def read_close_prices(path: str) -> List[float]:
    """
    Close prices from a comma-separated file with a header row.

    The header needs at least five columns, one of them "Close" (any case).
    Blank lines are skipped; line numbers in errors count the header as 1.

    Raises:
        ValueError: empty path
        FileNotFoundError: no such file
        PriceFileFormatError: malformed header or data line
    """
    if not path or not str(path).strip():
        raise ValueError("Price file path cannot be empty")
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Price file not found: {path}")

    prices = []
    with open(path, newline='', encoding='utf-8') as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if not header or not any(cell.strip() for cell in header):
            raise PriceFileFormatError("File is empty or header is missing")
        if len(header) < MIN_COLUMNS:
            raise PriceFileFormatError(
                "File must have at least 5 columns: Date,Open,High,Low,Close")

        names = [cell.strip().lower() for cell in header]
        if 'close' not in names:
            raise PriceFileFormatError("File must contain a 'Close' column")
        close_index = names.index('close')

        for row in reader:
            line = reader.line_num
            if not any(cell.strip() for cell in row):
                continue
            if len(row) <= close_index:
                raise PriceFileFormatError(
                    f"insufficient columns (expected at least {close_index + 1}, got {len(row)})",
                    line=line)
            raw = row[close_index].strip()
            try:
                price = float(raw)
            except ValueError:
                raise PriceFileFormatError("invalid close price value", line=line) from None
            if not price > 0:
                raise PriceFileFormatError("close price must be positive", line=line)
            prices.append(price)

    if not prices:
        raise PriceFileFormatError("No valid price data found in file")
    return prices


# ═══════════════════════════════════════════════════════════════════════════════
# FITTER
# ═══════════════════════════════════════════════════════════════════════════════

class VarianceGammaFitter:
    """
    Fits (σ, ν, θ) to a series of log returns observed every ``time_interval``
    years. The last fit is kept in ``result``.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.result: Optional[VarianceGammaFitResult] = None

    @property
    def converged(self) -> bool:
        return self.result is not None and self.result.converged

    def _grid_search(self, returns: np.ndarray, dt: float,
                     start: Tuple[float, float, float],
                     token: Optional[CancellationToken]) -> Tuple[float, float, float, float, int]:
        sigma0, nu0, theta0 = start
        best_sigma = _clamp(sigma0, MIN_VOLATILITY, MAX_VOLATILITY)
        best_nu = _clamp(nu0, MIN_VARIANCE_RATE, MAX_VARIANCE_RATE)
        best_theta = _clamp(theta0, MIN_DRIFT, MAX_DRIFT)
        best_ll = log_likelihood(returns, dt, best_sigma, best_nu, best_theta)

        sigmas = create_range(best_sigma, MIN_VOLATILITY, MAX_VOLATILITY, GRID_POINTS)
        nus = create_range(best_nu, MIN_VARIANCE_RATE, MAX_VARIANCE_RATE, GRID_POINTS)
        thetas = create_range(best_theta, MIN_DRIFT, MAX_DRIFT, GRID_POINTS)

        iterations = 0
        outer = None
        for sigma, nu, theta in itertools.product(sigmas, nus, thetas):
            if sigma != outer:
                outer = sigma
                check_cancelled(token)
            if not (MIN_VOLATILITY <= sigma <= MAX_VOLATILITY
                    and MIN_VARIANCE_RATE <= nu <= MAX_VARIANCE_RATE
                    and MIN_DRIFT <= theta <= MAX_DRIFT):
                continue
            iterations += 1
            ll = log_likelihood(returns, dt, sigma, nu, theta)
            if ll > best_ll:
                best_ll, best_sigma, best_nu, best_theta = ll, sigma, nu, theta

        return (_clamp(best_sigma, MIN_VOLATILITY, MAX_VOLATILITY),
                _clamp(best_nu, MIN_VARIANCE_RATE, MAX_VARIANCE_RATE),
                _clamp(best_theta, MIN_DRIFT, MAX_DRIFT),
                best_ll, iterations)

    @staticmethod
    def _goodness_of_fit(returns: np.ndarray, dt: float, sigma: float, nu: float, theta: float) -> float:
        theoretical_mean = theta * dt
        theoretical_var = (sigma * sigma + nu * theta * theta) * dt
        empirical_mean = float(np.mean(returns))
        empirical_var = float(np.sum((returns - empirical_mean) ** 2)) / (len(returns) - 1)

        mean_error = abs(theoretical_mean - empirical_mean)
        var_error = abs(theoretical_var - empirical_var) / empirical_var if empirical_var > 0 else 1.0
        return _clamp(math.exp(-(mean_error * 10.0 + var_error)), 0.0, 1.0)

    def fit_parameters(self, log_returns: Sequence[float], time_interval: float = DEFAULT_INTERVAL,
                       token: Optional[CancellationToken] = None) -> VarianceGammaFitResult:
        """
        Method of moments followed by one bounded grid pass.

        A numerical failure inside the fit yields the default set
        (σ=0.2, ν=0.1, θ=0) flagged converged with goodness of fit 0.

        Raises:
            ValueError: fewer than 10 returns
            OperationCancelledError: the token was cancelled
        """
        if log_returns is None or len(log_returns) < MIN_RETURNS:
            raise ValueError("Need at least 10 observations for reliable parameter estimation")
        returns = np.asarray(log_returns, dtype=float)

        try:
            start = method_of_moments(returns)
            sigma, nu, theta, ll, iterations = self._grid_search(returns, time_interval, start, token)
            converged = ll > -math.inf
            gof = self._goodness_of_fit(returns, time_interval, sigma, nu, theta) if converged else 0.0
            self.result = VarianceGammaFitResult(sigma, nu, theta, ll, gof, iterations, converged,
                                                 observations=len(returns))
        except (ArithmeticError, ValueError) as exc:
            logger.warning("VG fit failed (%s); using default parameters", exc)
            self.result = VarianceGammaFitResult(
                sigma=0.2, nu=0.1, theta=0.0, log_likelihood=-math.inf,
                goodness_of_fit=0.0, iterations=0, converged=True,
                observations=len(returns))

        logger.info("VG fit: σ=%.4f ν=%.4f θ=%.4f LL=%.2f GoF=%.4f (%d points)",
                    self.result.sigma, self.result.nu, self.result.theta,
                    self.result.log_likelihood, self.result.goodness_of_fit,
                    self.result.iterations)
        if self.verbose:
            print(self.fit_summary())
        return self.result

    def fit_prices(self, prices: Sequence[float], time_interval: float = DEFAULT_INTERVAL,
                   token: Optional[CancellationToken] = None) -> VarianceGammaFitResult:
        if len(prices) < MIN_PRICES:
            raise ValueError(
                f"Need at least {MIN_PRICES} price observations for reliable parameter "
                f"estimation, got {len(prices)}")
        return self.fit_parameters(log_returns_from_prices(prices), time_interval, token)

    def run_fit_from_file(self, path: str, time_interval: float = DEFAULT_INTERVAL,
                          token: Optional[CancellationToken] = None) -> VarianceGammaFitResult:
        """
        Read close prices from ``path`` and fit.

        Raises:
            ValueError / PriceFileFormatError / FileNotFoundError as documented
            on ``read_close_prices`` and ``fit_parameters``
            RuntimeError: any other failure while reading or fitting
        """
        try:
            prices = read_close_prices(path)
            return self.fit_prices(prices, time_interval, token)
        except (ValueError, FileNotFoundError, OperationCancelledError):
            raise
        except Exception as exc:
            raise RuntimeError(f"Failed to fit VG parameters from file: {exc}") from exc

    async def run_fit_from_file_async(self, path: str, time_interval: float = DEFAULT_INTERVAL,
                                      token: Optional[CancellationToken] = None) -> VarianceGammaFitResult:
        return await asyncio.to_thread(self.run_fit_from_file, path, time_interval, token)

    def apply_to_engine(self, engine) -> None:
        """Copy the fitted parameters onto a VarianceGammaEngine."""
        if not self.converged:
            raise ValueError("Cannot apply parameters - fitting has not converged")
        engine.params = self.result.params

    def fit_summary(self) -> str:
        if not self.converged:
            return "Fitting did not converge"
        r = self.result
        return (
            f"VG Parameters:\n"
            f"  Volatility (σ): {r.sigma:.4f}\n"
            f"  Variance Rate (ν): {r.nu:.4f}\n"
            f"  Drift Parameter (θ): {r.theta:.4f}\n"
            f"  Log-Likelihood: {r.log_likelihood:.2f}\n"
            f"  Goodness of Fit: {r.goodness_of_fit:.4f}\n"
            f"  Iterations: {r.iterations}\n"
            f"  Converged: {r.converged}"
        )
