"""
Flask Backend API for the Option Engines

═══════════════════════════════════════════════════════════════════════════════
REST API ENDPOINTS
═══════════════════════════════════════════════════════════════════════════════

Endpoints:
- GET  /api/health: Health check
- POST /api/price: Call and put price (black_scholes | heston | bates | variance_gamma)
- POST /api/greeks: Prices plus Greeks for the same models
- POST /api/implied-vol: Black-Scholes implied volatility
- POST /api/calibrate: Heston grid calibration to put prices
- POST /api/fit-vg: Variance Gamma fit to posted returns or close prices
- POST /api/risk-curve: Portfolio P&L across underlying prices

Contract fields common to the pricing endpoints:
    {"S": spot, "K": strike, "r": rate, "days": calendar days to expiry}

Errors: invalid input → 400, anything else → 500, body {"error": message}.

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import math
from datetime import date

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .core.parameters import (
    OptionContract,
    HestonParams,
    HestonExtensions,
    BatesParams,
    JumpParams,
    VarianceGammaParams,
    IntegrationMethod,
    ModelType,
    get_default_params,
    get_default_bates_params,
    get_default_vg_params,
)
from .solvers.black_scholes import BlackScholesEngine
from .solvers.heston import HestonEngine
from .solvers.bates import BatesEngine
from .solvers.variance_gamma import VarianceGammaEngine
from .calibration.optimizer import MarketOption, compute_fit_metrics
from .calibration.vg_fitter import VarianceGammaFitter, DEFAULT_INTERVAL
from .risk.positions import AssetClass, Contract, Position, build_risk_curve

logger = logging.getLogger(__name__)

MODELS = ('black_scholes', 'heston', 'bates', 'variance_gamma')

app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False
app.config['MAX_CONTENT_LENGTH'] = 4 * 1024 * 1024
app.json.sort_keys = False
CORS(app)


# ═══════════════════════════════════════════════════════════════════════════════
# UTILITY FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════

def get_json_data() -> dict:
    """Get JSON data from request with fallback to empty dict."""
    json_data = request.get_json(silent=True)
    return json_data if json_data is not None else {}


def _finite(x: float):
    """JSON has no inf / nan."""
    return x if math.isfinite(x) else None


def parse_contract(data: dict) -> OptionContract:
    try:
        S = float(data.get('S', 100.0))
        K = float(data.get('K', S))
        r = float(data.get('r', 0.05))
        days = float(data.get('days', 30.0))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid contract field: {e}") from None
    if S <= 0 or K <= 0 or days < 0:
        raise ValueError("S and K must be positive and days non-negative")
    return OptionContract.from_days(S, K, r, days)


def parse_heston_params(p: dict) -> HestonParams:
    """
    Heston parameters from either variances or volatilities:

    {"V0", "theta", "kappa", "sigma", "rho"} or
    {"current_vol", "long_term_vol", "kappa", "sigma", "rho"}
    """
    if not p:
        return get_default_params()
    defaults = get_default_params()
    merged = {
        'kappa': p.get('kappa', defaults.kappa),
        'sigma': p.get('sigma', defaults.sigma),
        'rho': p.get('rho', defaults.rho),
    }
    if 'current_vol' in p or 'long_term_vol' in p:
        merged['current_vol'] = p.get('current_vol', defaults.current_volatility)
        merged['long_term_vol'] = p.get('long_term_vol', defaults.long_term_volatility)
    else:
        merged['V0'] = p.get('V0', defaults.V0)
        merged['theta'] = p.get('theta', defaults.theta)
    try:
        return HestonParams.from_dict(merged)
    except AssertionError as e:
        raise ValueError(str(e)) from None


def parse_bates_params(p: dict) -> BatesParams:
    defaults = get_default_bates_params()
    if not p:
        return defaults
    heston = parse_heston_params(p.get('heston', {})) if 'heston' in p else defaults.heston
    jumps = p.get('jumps', {})
    try:
        jump_params = JumpParams(
            intensity=float(jumps.get('intensity', defaults.jumps.intensity)),
            mean=float(jumps.get('mean', defaults.jumps.mean)),
            volatility=float(jumps.get('volatility', defaults.jumps.volatility)),
        )
    except AssertionError as e:
        raise ValueError(str(e)) from None
    return BatesParams(heston=heston, jumps=jump_params)


def parse_vg_params(p: dict) -> VarianceGammaParams:
    defaults = get_default_vg_params()
    try:
        return VarianceGammaParams(
            sigma=float(p.get('sigma', defaults.sigma)),
            nu=float(p.get('nu', defaults.nu)),
            theta=float(p.get('theta', defaults.theta)),
        )
    except AssertionError as e:
        raise ValueError(str(e)) from None


def _enum(enum_cls, value, default):
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        raise ValueError(f"Unknown {enum_cls.__name__}: {value}") from None


def build_engine(data: dict):
    """Engine for ``data['model']`` with its contract and parameters set."""
    model = data.get('model', 'heston')
    contract = parse_contract(data)
    params = data.get('params', {}) or {}

    if model == 'black_scholes':
        if contract.T <= 0:
            raise ValueError("Black-Scholes needs a positive time to expiry")
        return BlackScholesEngine(contract, volatility=float(params.get('sigma', 0.2)),
                                  spot_vol_slope=float(params.get('spot_vol_slope', 0.0)))
    if model == 'heston':
        ext = data.get('extensions', {}) or {}
        try:
            extensions = HestonExtensions(**ext)
        except (TypeError, AssertionError) as e:
            raise ValueError(f"Invalid extensions: {e}") from None
        return HestonEngine(
            contract,
            parse_heston_params(params),
            integration_method=_enum(IntegrationMethod, data.get('integration_method'),
                                     IntegrationMethod.APPROXIMATION),
            model_type=_enum(ModelType, data.get('model_type'), ModelType.STANDARD_HESTON),
            extensions=extensions,
        )
    if model == 'bates':
        return BatesEngine(
            contract,
            parse_bates_params(params),
            use_monte_carlo=bool(data.get('use_monte_carlo', False)),
            mc_paths=int(data.get('mc_paths', 20000)),
            mc_steps=int(data.get('mc_steps', 200)),
            use_cos_delta=bool(data.get('use_cos_delta', False)),
        )
    if model == 'variance_gamma':
        return VarianceGammaEngine(contract, parse_vg_params(params))
    raise ValueError(f"Unknown model: {model} (expected one of {', '.join(MODELS)})")


def _params_dict(engine) -> dict:
    if isinstance(engine, BlackScholesEngine):
        return {'sigma': engine.volatility}
    return engine.params.to_dict()


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR HANDLING
# ═══════════════════════════════════════════════════════════════════════════════

@app.errorhandler(ValueError)
def handle_value_error(e):
    return jsonify({'error': str(e)}), 400


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return jsonify({'error': e.description}), e.code
    logger.exception("Unhandled error in %s", request.path)
    return jsonify({'error': str(e)}), 500


# ═══════════════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({
        'status': 'healthy',
        'service': 'Option Engines API',
        'version': '1.0.0',
        'models': list(MODELS),
    })


@app.route('/api/price', methods=['POST'])
def price_option():
    """
    Request JSON:
    {
        "model": "black_scholes" | "heston" | "bates" | "variance_gamma",
        "S", "K", "r", "days",
        "params": {...model parameters...},
        "integration_method", "model_type", "extensions"   (heston only)
        "use_monte_carlo", "mc_paths", "mc_steps"          (bates only)
    }

    Response JSON:
    {"model", "call", "put", "params", ...}
    """
    data = get_json_data()
    engine = build_engine(data)
    values = engine.calculate_price()
    result = {
        'model': data.get('model', 'heston'),
        'call': values.call,
        'put': values.put,
        'params': _params_dict(engine),
    }
    if isinstance(engine, HestonEngine):
        result['feller_ratio'] = _finite(engine.params.feller_ratio)
        result['feller_satisfied'] = engine.params.feller_satisfied
    return jsonify(result)


@app.route('/api/greeks', methods=['POST'])
def compute_greeks():
    """Same request as /api/price; returns prices and the full Greeks set."""
    data = get_json_data()
    engine = build_engine(data)
    greeks = engine.calculate_all()
    return jsonify({
        'model': data.get('model', 'heston'),
        'call': engine.call_value,
        'put': engine.put_value,
        'greeks': greeks.to_dict(),
    })


@app.route('/api/implied-vol', methods=['POST'])
def implied_vol():
    """
    Request JSON:
    {"S", "K", "r", "days", "price", "option_type": "call" | "put",
     "method": "newton" | "bisection" | "fast"}
    """
    data = get_json_data()
    contract = parse_contract(data)
    if contract.is_expired:
        raise ValueError("Implied volatility needs a positive time to expiry")
    if 'price' not in data:
        raise ValueError("Missing 'price'")
    price = float(data['price'])
    is_call = data.get('option_type', 'call') == 'call'
    method = data.get('method', 'newton')

    engine = BlackScholesEngine(contract)
    if method == 'bisection':
        iv = engine.implied_volatility_bisection(price, is_call)
    elif method == 'fast':
        iv = engine.implied_volatility_fast(price, is_call)
    elif method == 'newton':
        iv = engine.implied_volatility_newton(price, is_call)
    else:
        raise ValueError(f"Unknown method: {method}")

    engine.volatility = iv
    values = engine.calculate_price()
    return jsonify({
        'implied_volatility': iv,
        'iterations': engine.iteration_count,
        'method': method,
        'repriced': values.call if is_call else values.put,
    })


@app.route('/api/calibrate', methods=['POST'])
def calibrate():
    """
    Heston grid calibration.

    Request JSON:
    {
        "S", "r",
        "options": [{"strike", "expiry_days", "price"}, ...],
        "grid": {"long_term_vol": [lo, hi], ...}   (optional),
        "max_passes": int (optional), "refine": bool (optional)
    }
    """
    data = get_json_data()
    options = data.get('options') or []
    if not options:
        raise ValueError("No market options supplied")
    try:
        market = [MarketOption(strike=float(o['strike']), expiry_days=float(o['expiry_days']),
                               price=float(o['price'])) for o in options]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid market option: {e}") from None

    contract = parse_contract({'S': data.get('S', 100.0), 'K': market[0].strike,
                               'r': data.get('r', 0.05), 'days': market[0].expiry_days})
    grid = data.get('grid')
    if grid is not None:
        grid = {name: tuple(float(x) for x in bounds) for name, bounds in grid.items()}

    engine = HestonEngine(contract, parse_heston_params(data.get('params', {}) or {}))
    max_passes = data.get('max_passes')
    result = engine.calibrate_to_market_prices(
        [o.price for o in market],
        [o.strike for o in market],
        [o.expiry_days for o in market],
        max_passes=int(max_passes) if max_passes is not None else None,
        grid=grid,
        refine=bool(data.get('refine', False)),
    )
    metrics = compute_fit_metrics(engine, contract, result.params, market)
    response = result.to_dict()
    response['objective'] = _finite(result.objective)
    for entry in response['history']:
        entry['objective'] = _finite(entry['objective'])
    response['metrics'] = metrics
    return jsonify(response)


@app.route('/api/fit-vg', methods=['POST'])
def fit_vg():
    """
    Request JSON (one of):
    {"returns": [...]}  |  {"prices": [...]}
    plus optional "time_interval" (years between observations, default 1/252).
    """
    data = get_json_data()
    dt = float(data.get('time_interval', DEFAULT_INTERVAL))
    fitter = VarianceGammaFitter()
    if 'returns' in data:
        result = fitter.fit_parameters([float(x) for x in data['returns']], dt)
    elif 'prices' in data:
        result = fitter.fit_prices([float(x) for x in data['prices']], dt)
    else:
        raise ValueError("Supply 'returns' or 'prices'")
    response = result.to_dict()
    response['summary'] = fitter.fit_summary()
    return jsonify(response)


def _parse_position(p: dict) -> Position:
    try:
        asset_class = AssetClass(p.get('asset_class', 'OPT'))
        expiration = p.get('expiration')
        contract = Contract(
            symbol=p.get('symbol', ''),
            asset_class=asset_class,
            strike=float(p['strike']) if 'strike' in p else None,
            is_call=p.get('is_call'),
            multiplier=float(p.get('multiplier', 1.0)),
            expiration=date.fromisoformat(expiration) if expiration else None,
        )
        return Position(
            contract=contract,
            size=float(p['size']),
            market_price=float(p['market_price']),
            volatility=float(p['volatility']) if p.get('volatility') is not None else None,
        )
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid position: {e}") from None


@app.route('/api/risk-curve', methods=['POST'])
def risk_curve():
    """
    Request JSON:
    {
        "mid_price", "r", "width" (default 0.05), "increments" (default 100),
        "today": "YYYY-MM-DD" (optional),
        "positions": [{"symbol", "asset_class", "strike", "is_call",
                       "multiplier", "expiration", "size", "market_price",
                       "volatility"}, ...]
    }
    """
    data = get_json_data()
    positions = [_parse_position(p) for p in data.get('positions', [])]
    today = data.get('today')
    curve = build_risk_curve(
        positions,
        mid_price=float(data.get('mid_price', 100.0)),
        r=float(data.get('r', 0.05)),
        width=float(data.get('width', 0.05)),
        increments=int(data.get('increments', 100)),
        today=date.fromisoformat(today) if today else None,
    )
    return jsonify(curve.to_dict())
