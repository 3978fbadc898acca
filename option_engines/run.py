#!/usr/bin/env python3
"""
═══════════════════════════════════════════════════════════════════════════════
OPTION ENGINES - Application Entry Point
═══════════════════════════════════════════════════════════════════════════════

Usage:
    python -m option_engines.run                 # Start web server
    python -m option_engines.run --test          # Run validation tests only
    python -m option_engines.run --demo          # Run demo pricing calculations
    python -m option_engines.run --fit FILE.csv  # Fit Variance Gamma to close prices

Models:
    Black-Scholes      closed form, Greeks, implied volatility
    Heston             dV = κ(θ-V)dt + ξ√V dW_V,  Corr(dW_S, dW_V) = ρ
    Bates              Heston + log-normal jumps (λ, μ_J, σ_J)
    Variance Gamma     σ, ν, θ; fitted to historical returns

═══════════════════════════════════════════════════════════════════════════════
"""

import sys
import argparse
import logging


def run_demo():
    """Run demonstration calculations."""

    print("=" * 70)
    print("OPTION ENGINES - DEMO")
    print("=" * 70)
    print()

    from option_engines.backend.core.parameters import (
        OptionContract, IntegrationMethod, get_default_params,
    )
    from option_engines.backend.solvers.black_scholes import BlackScholesEngine
    from option_engines.backend.solvers.heston import HestonEngine
    from option_engines.backend.solvers.bates import BatesEngine
    from option_engines.backend.solvers.variance_gamma import VarianceGammaEngine

    contract = OptionContract.from_days(S=100.0, K=100.0, r=0.05, days=30)
    params = get_default_params()
    print(f"Contract: S={contract.S}, K={contract.K}, r={contract.r}, {contract.days_left:.0f} days")
    print(f"Heston:   {params!r}")
    print("-" * 70)

    print("\n1. BLACK-SCHOLES (σ = 20%)")
    bs = BlackScholesEngine(contract, volatility=0.2)
    g = bs.calculate_all()
    print(f"   Call: {bs.call_value:.4f}   Put: {bs.put_value:.4f}")
    print(f"   Δ_C = {g.delta_call:.4f}  Γ = {g.gamma:.6f}  ν = {g.vega_call:.4f}  Θ_C = {g.theta_call:.4f}")

    print("\n2. HESTON")
    for method in (IntegrationMethod.APPROXIMATION, IntegrationMethod.ADAPTIVE):
        heston = HestonEngine(contract, params, integration_method=method)
        g = heston.calculate_all()
        print(f"   {method.value:<13} Call: {heston.call_value:.4f}   Put: {heston.put_value:.4f}"
              f"   Δ_C = {g.delta_call:.4f}")

    print("\n3. BATES (Fourier, COS delta)")
    bates = BatesEngine(contract, use_cos_delta=True)
    g = bates.calculate_all()
    print(f"   Call: {bates.call_value:.4f}   Put: {bates.put_value:.4f}   Δ_C = {g.delta_call:.4f}")

    print("\n4. VARIANCE GAMMA")
    vg = VarianceGammaEngine(contract)
    vg.calculate_price()
    print(f"   Call: {vg.call_value:.4f}   Put: {vg.put_value:.4f}")

    print("\n5. IMPLIED VOLATILITY SMILE (Heston prices)")
    heston = HestonEngine(contract, params, integration_method=IntegrationMethod.ADAPTIVE)
    print("   Strike    Call     Implied Vol")
    for strike in [85, 90, 95, 100, 105, 110, 115]:
        option = OptionContract.from_days(contract.S, strike, contract.r, contract.days_left)
        price = heston.price(option, params).call
        iv = BlackScholesEngine(option).implied_volatility_fast(price, is_call=True)
        print(f"   {strike:6.0f}    {price:6.2f}    {iv*100:5.2f}%")

    print()
    print("=" * 70)
    print("Demo complete!")
    print("=" * 70)


def run_tests():
    """Run validation tests."""
    from option_engines.tests.validation import run_all_tests
    success = run_all_tests()
    return 0 if success else 1


def run_fit(path: str) -> int:
    """Fit Variance Gamma parameters to a close-price file."""
    from option_engines.backend.calibration.vg_fitter import VarianceGammaFitter

    fitter = VarianceGammaFitter()
    fitter.run_fit_from_file(path)
    print(fitter.fit_summary())
    return 0 if fitter.converged else 1


def run_server(host='0.0.0.0', port=5000, debug=True):
    """Start the web server."""
    from option_engines.backend.app import app
    app.run(host=host, port=port, debug=debug)


def main():
    parser = argparse.ArgumentParser(
        description='Black-Scholes, Heston, Bates and Variance Gamma option engines',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    option-engines                 Start web server at http://localhost:5000
    option-engines --port 8000     Start on custom port
    option-engines --test          Run validation tests
    option-engines --demo          Run demo calculations
    option-engines --fit spx.csv   Fit Variance Gamma to a Date,Open,High,Low,Close file
        """
    )

    parser.add_argument('--test', action='store_true', help='Run validation tests')
    parser.add_argument('--demo', action='store_true', help='Run demo calculations')
    parser.add_argument('--fit', metavar='PATH', help='Fit Variance Gamma to a close-price file')
    parser.add_argument('--host', default='0.0.0.0', help='Server host (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=5000, help='Server port (default: 5000)')
    parser.add_argument('--no-debug', action='store_true', help='Disable debug mode')
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: WARNING)')

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    if args.test:
        sys.exit(run_tests())
    elif args.demo:
        run_demo()
    elif args.fit:
        sys.exit(run_fit(args.fit))
    else:
        run_server(args.host, args.port, not args.no_debug)


if __name__ == '__main__':
    main()
