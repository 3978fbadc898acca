"""
Heston / Bates Characteristic Function and Fourier Probabilities

═══════════════════════════════════════════════════════════════════════════════
1. CHARACTERISTIC FUNCTION OF ln(S_T)
═══════════════════════════════════════════════════════════════════════════════

   φ(u) = exp(C(u) + D(u)·V₀ + iu(ln S + r*T)) · J(u)

   α = κ - ρξiu
   d = √(α² + ξ²(iu + u²))          (branch with Re(d) ≥ 0)
   g = (α - d)/(α + d)

   C = (κθ/ξ²)·[(α - d)T - 2·ln((1 - g·e^{-dT})/(1 - g))]
   D = ((α - d)/ξ²)·(1 - e^{-dT})/(1 - g·e^{-dT})

   This is the "little Heston trap" form: using e^{-dT} instead of e^{dT}
   keeps the complex logarithm on its principal branch for long maturities.

   Jumps (Bates):
   J(u) = exp(λT·(e^{iuμ_J - ½σ_J²·u(u+i)} - 1))
   r*   = r - λ·k_J,   k_J = e^{μ_J + σ_J²/2} - 1

   Without jumps J ≡ 1 and r* = r, which is plain Heston.

═══════════════════════════════════════════════════════════════════════════════
2. GIL-PELAEZ INVERSION
═══════════════════════════════════════════════════════════════════════════════

   P₁ = ½ + (1/π) ∫₀^U Re[e^{-iu·ln K} · φ(u - i) / (iu·φ(-i))] du
   P₂ = ½ + (1/π) ∫₀^U Re[e^{-iu·ln K} · φ(u) / (iu)] du

   C = S·P₁ - K·e^{-rT}·P₂
   P = K·e^{-rT}·(1 - P₂) - S·(1 - P₁)

   Both integrands have a finite limit at u = 0; the grid starts at a tiny
   positive u so the first trapezoid node carries that limit instead of
   being dropped.

═══════════════════════════════════════════════════════════════════════════════
"""

import math
from typing import Optional, Tuple

import numpy as np
from scipy.integrate import trapezoid

from ..core.parameters import HestonParams, JumpParams

# Real part of the exponent is clipped to this window before exp()
EXPONENT_FLOOR = -700.0
EXPONENT_CEILING = 300.0

U_START = 1e-8


def characteristic_function(
    u: np.ndarray,
    S: float,
    T: float,
    r: float,
    params: HestonParams,
    jumps: Optional[JumpParams] = None,
) -> np.ndarray:
    """
    Vectorised characteristic function of ln(S_T).

    Args:
        u: Real or complex frequencies
        S: Spot
        T: Time to expiry
        r: Drift used in the forward (already jump compensated for Bates)
        params: Heston parameters; V0 and theta are variances
        jumps: Optional jump parameters

    Returns:
        Complex array with the shape of ``u``
    """
    u = np.asarray(u, dtype=complex)
    kappa, theta, xi, rho, v0 = params.kappa, params.theta, params.sigma, params.rho, params.V0

    iu = 1j * u
    alpha = kappa - rho * xi * iu
    d = np.sqrt(alpha * alpha + xi * xi * (iu + u * u))
    d = np.where(d.real < 0.0, -d, d)

    g = (alpha - d) / (alpha + d)
    exp_neg_dt = np.exp(-d * T)
    one_minus_g = 1.0 - g
    degenerate = np.abs(one_minus_g) < 1e-14
    one_minus_g = np.where(degenerate, 1.0, one_minus_g)

    log_term = np.log((1.0 - g * exp_neg_dt) / one_minus_g)
    C = (kappa * theta / (xi * xi)) * ((alpha - d) * T - 2.0 * log_term)
    D = ((alpha - d) / (xi * xi)) * (1.0 - exp_neg_dt) / (1.0 - g * exp_neg_dt)

    exponent = C + D * v0 + iu * (math.log(S) + r * T)
    if jumps is not None and jumps.intensity > 0.0:
        mu_j, sig_j = jumps.mean, jumps.volatility
        exponent = exponent + jumps.intensity * T * (
            np.exp(iu * mu_j - 0.5 * sig_j * sig_j * u * (u + 1j)) - 1.0
        )

    exponent = np.clip(exponent.real, EXPONENT_FLOOR, EXPONENT_CEILING) + 1j * exponent.imag
    phi = np.exp(exponent)
    return np.where(degenerate, 0.0 + 0.0j, phi)


def gil_pelaez_probabilities(
    S: float,
    K: float,
    T: float,
    r: float,
    params: HestonParams,
    upper: float,
    points: int,
    jumps: Optional[JumpParams] = None,
) -> Tuple[float, float]:
    """
    P₁ and P₂ by trapezoid integration over [0, upper] with ``points`` nodes.
    Both are clamped to [0, 1].
    """
    u = np.linspace(U_START, upper, int(points))
    log_k = math.log(K)
    phase = np.exp(-1j * u * log_k)

    phi_minus_i = characteristic_function(np.array([-1j]), S, T, r, params, jumps)[0]
    if phi_minus_i == 0:
        phi_minus_i = 1.0

    phi_shifted = characteristic_function(u - 1j, S, T, r, params, jumps)
    phi = characteristic_function(u, S, T, r, params, jumps)

    integrand_p1 = np.real(phase * phi_shifted / (1j * u * phi_minus_i))
    integrand_p2 = np.real(phase * phi / (1j * u))

    p1 = 0.5 + trapezoid(integrand_p1, u) / math.pi
    p2 = 0.5 + trapezoid(integrand_p2, u) / math.pi

    return float(np.clip(p1, 0.0, 1.0)), float(np.clip(p2, 0.0, 1.0))


def fourier_values(S: float, K: float, T: float, r_discount: float,
                   p1: float, p2: float) -> Tuple[float, float]:
    """Call and put from the two probabilities."""
    df = math.exp(-r_discount * T)
    call = S * p1 - K * df * p2
    put = K * df * (1.0 - p2) - S * (1.0 - p1)
    return call, put
