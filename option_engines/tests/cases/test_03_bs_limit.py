from typing import Tuple, Dict

from .common import (
    OptionContract,
    BatesParams,
    JumpParams,
    IntegrationMethod,
    HestonEngine,
    BatesEngine,
    black_scholes_values,
    near_black_scholes_heston,
)


def check_heston_bs_limit() -> Tuple[bool, str, Dict]:
    """
    With ξ → 0, ρ = 0 and V₀ = θ the variance is deterministic and Heston
    collapses to Black-Scholes at σ = √θ, for the Fourier and the
    approximation paths alike.
    """
    params = near_black_scholes_heston(vol=0.2, xi=0.01)
    details = {}
    for K in (90.0, 100.0, 110.0):
        contract = OptionContract.from_days(100.0, K, 0.05, 90)
        bs = black_scholes_values(contract.S, K, contract.r, contract.T, 0.2)
        for method in (IntegrationMethod.ADAPTIVE, IntegrationMethod.APPROXIMATION):
            heston = HestonEngine(integration_method=method).price(contract, params)
            details[f'{method.value} K={K:.0f}'] = abs(heston.call - bs.call) / bs.call * 100

    worst = max(details.values())
    passed = worst < 1.0
    message = f"Max call difference = {worst:.4f}%"
    return passed, message, details


def check_bates_bs_limit() -> Tuple[bool, str, Dict]:
    """Bates without jumps and with negligible vol-of-vol is Black-Scholes."""
    params = BatesParams(heston=near_black_scholes_heston(vol=0.25, xi=0.01),
                         jumps=JumpParams(intensity=0.0, mean=0.0, volatility=0.0))
    details = {}
    for K in (90.0, 100.0, 110.0):
        contract = OptionContract.from_days(100.0, K, 0.03, 180)
        bs = black_scholes_values(contract.S, K, contract.r, contract.T, 0.25)
        bates = BatesEngine().price(contract, params)
        details[f'K={K:.0f}'] = abs(bates.call - bs.call) / bs.call * 100

    worst = max(details.values())
    passed = worst < 1.0
    message = f"Max call difference = {worst:.4f}%"
    return passed, message, details


def test_heston_bs_limit():
    passed, message, _ = check_heston_bs_limit()
    assert passed, message


def test_bates_bs_limit():
    passed, message, _ = check_bates_bs_limit()
    assert passed, message


def test_jumps_raise_put_value():
    contract = OptionContract.from_days(100.0, 95.0, 0.03, 60)
    diffusion = BatesParams(heston=near_black_scholes_heston(vol=0.2, xi=0.2),
                            jumps=JumpParams(intensity=0.0, mean=-0.1, volatility=0.1))
    jumpy = BatesParams(heston=diffusion.heston,
                        jumps=JumpParams(intensity=1.0, mean=-0.1, volatility=0.1))
    engine = BatesEngine()
    assert engine.price(contract, jumpy).put > engine.price(contract, diffusion).put
