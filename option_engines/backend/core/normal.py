"""
Standard Normal Distribution Helpers

═══════════════════════════════════════════════════════════════════════════════
ABRAMOWITZ-STEGUN POLYNOMIAL APPROXIMATION (26.2.17)
═══════════════════════════════════════════════════════════════════════════════

For z ≥ 0:

   N(z) ≈ 1 - φ(z)·(b₁t + b₂t² + b₃t³ + b₄t⁴ + b₅t⁵),   t = 1/(1 + p·z)

   p  =  0.2316419
   b₁ =  0.319381530    b₂ = -0.356563782    b₃ = 1.781477937
   b₄ = -1.821255978    b₅ =  1.330274429

For z < 0 the symmetry N(z) = 1 - N(-z) is used.

Absolute error is below 7.5e-8 on the real line. Beyond |z| > 6 the
tail mass is below 1e-9, so the result is pinned to exactly 0 or 1.

═══════════════════════════════════════════════════════════════════════════════
"""

import math

SQRT_2PI = math.sqrt(2.0 * math.pi)

_P = 0.2316419
_B1 = 0.31938153
_B2 = -0.356563782
_B3 = 1.781477937
_B4 = -1.821255978
_B5 = 1.330274429
_C2 = 0.3989423


def exp_opt(x: float) -> float:
    """Exponential that returns 0 below -10."""
    if x < -10.0:
        return 0.0
    if x == 0.0:
        return 1.0
    return math.exp(x)


def normal_density(x: float) -> float:
    """Standard normal density φ(x)."""
    return exp_opt(-x * x / 2.0) / SQRT_2PI


def cumulative_normal(z: float) -> float:
    """
    Cumulative standard normal N(z).

    Args:
        z: Standardised value

    Returns:
        Probability in [0, 1]
    """
    if z > 6.0:
        return 1.0
    if z < -6.0:
        return 0.0

    a = abs(z)
    t = 1.0 / (1.0 + a * _P)
    b = _C2 * exp_opt(-z * z / 2.0)
    n = ((((_B5 * t + _B4) * t + _B3) * t + _B2) * t + _B1) * t
    n = 1.0 - b * n

    if z < 0.0:
        n = 1.0 - n
    return n
