from typing import Tuple, Dict

from .common import (
    OptionContract,
    BlackScholesParams,
    HestonExtensions,
    IntegrationMethod,
    ModelType,
    BlackScholesEngine,
    HestonEngine,
    BatesEngine,
    VarianceGammaEngine,
    atm_contract,
    parity_error,
    near_black_scholes_heston,
    get_default_params,
    get_default_bates_params,
    get_default_vg_params,
)


def check_put_call_parity() -> Tuple[bool, str, Dict]:
    """C - P = S - K·e^{-rT} for the pricers that preserve it exactly."""
    errors = {}
    for K in (90.0, 100.0, 105.0):
        contract = OptionContract.from_days(100.0, K, 0.05, 90)

        bs = BlackScholesEngine().price(contract, BlackScholesParams(0.25))
        errors[f'bs K={K:.0f}'] = parity_error(contract, bs)

        # ρ = 0 switches off the correlation adjustment
        heston = HestonEngine(integration_method=IntegrationMethod.ADAPTIVE)
        values = heston.price(contract, near_black_scholes_heston(0.2, xi=0.3))
        errors[f'heston K={K:.0f}'] = parity_error(contract, values)

        jump_variant = HestonEngine(
            integration_method=IntegrationMethod.ADAPTIVE,
            model_type=ModelType.JUMP_DIFFUSION_HESTON,
            extensions=HestonExtensions(jumps_enabled=True),
        )
        errors[f'heston jumps K={K:.0f}'] = parity_error(
            contract, jump_variant.price(contract, get_default_params()))

        bates = BatesEngine().price(contract, get_default_bates_params())
        errors[f'bates K={K:.0f}'] = parity_error(contract, bates)

    max_error = max(errors.values())
    passed = max_error < 0.01
    message = f"Max parity error = {max_error:.6f}"
    return passed, message, errors


def check_expiry_boundary() -> Tuple[bool, str, Dict]:
    """At T = 0 every engine returns intrinsic value."""
    contract = OptionContract(S=105.0, K=100.0, r=0.05, T=0.0)
    results = {
        'bs': BlackScholesEngine().price(contract, BlackScholesParams(0.2)),
        'heston': HestonEngine().price(contract, get_default_params()),
        'heston_adaptive': HestonEngine(integration_method=IntegrationMethod.ADAPTIVE).price(
            contract, get_default_params()),
        'bates': BatesEngine().price(contract, get_default_bates_params()),
        'bates_mc': BatesEngine(use_monte_carlo=True).price(contract, get_default_bates_params()),
        'vg': VarianceGammaEngine().price(contract, get_default_vg_params()),
    }
    checks = {name: v.call == 5.0 and v.put == 0.0 for name, v in results.items()}

    passed = all(checks.values())
    message = "All intrinsic" if passed else f"Failed: {[k for k, v in checks.items() if not v]}"
    return passed, message, {'checks': checks}


def check_price_bounds() -> Tuple[bool, str, Dict]:
    """Discounted-intrinsic floor, call ≤ S and put ≤ K·df for every engine and strike."""
    engines = {
        'heston': (HestonEngine(), get_default_params()),
        'heston_fixed': (HestonEngine(integration_method=IntegrationMethod.FIXED), get_default_params()),
        'heston_laplace': (HestonEngine(model_type=ModelType.ASYMMETRIC_LAPLACE), get_default_params()),
        'bates': (BatesEngine(), get_default_bates_params()),
    }
    violations = []
    for name, (engine, params) in engines.items():
        for K in (60.0, 80.0, 100.0, 120.0, 160.0):
            for days in (3, 30, 365):
                c = OptionContract.from_days(100.0, K, 0.05, days)
                v = engine.price(c, params)
                df = c.discount_factor
                ok = (v.is_finite()
                      and max(c.S - c.K * df, 0.0) - 1e-9 <= v.call <= c.S + 1e-9
                      and max(c.K * df - c.S, 0.0) - 1e-9 <= v.put <= c.K * df + 1e-9)
                if not ok:
                    violations.append((name, K, days, v.call, v.put))

    passed = not violations
    message = "All within bounds" if passed else f"{len(violations)} violations"
    return passed, message, {'violations': violations}


def test_put_call_parity():
    passed, message, _ = check_put_call_parity()
    assert passed, message


def test_expiry_boundary():
    passed, message, _ = check_expiry_boundary()
    assert passed, message


def test_price_bounds():
    passed, message, _ = check_price_bounds()
    assert passed, message


def test_bates_parity_repair_tolerance():
    contract = atm_contract(days=60)
    assert parity_error(contract, BatesEngine().price(contract, get_default_bates_params())) < 1e-3
