import numpy as np
import pytest

from .common import random_walk_prices
from ...backend.app import app


@pytest.fixture
def client():
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'healthy'
    assert set(body['models']) == {'black_scholes', 'heston', 'bates', 'variance_gamma'}


def test_price_black_scholes(client):
    response = client.post('/api/price', json={
        'model': 'black_scholes', 'S': 100, 'K': 100, 'r': 0.05, 'days': 365,
        'params': {'sigma': 0.2},
    })
    assert response.status_code == 200
    body = response.get_json()
    # Hull textbook value
    assert body['call'] == pytest.approx(10.4506, abs=1e-3)
    assert body['params'] == {'sigma': 0.2}


def test_price_heston_reports_feller(client):
    response = client.post('/api/price', json={
        'model': 'heston', 'S': 100, 'K': 95, 'r': 0.05, 'days': 90,
        'params': {'current_vol': 0.2, 'long_term_vol': 0.2, 'kappa': 2.0, 'sigma': 0.3, 'rho': -0.7},
        'integration_method': 'adaptive',
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body['call'] > 5.0 and body['put'] > 0.0
    assert body['feller_satisfied'] is True
    assert body['feller_ratio'] == pytest.approx(2 * 2.0 * 0.04 / 0.09)


def test_price_bates_and_variance_gamma(client):
    for model in ('bates', 'variance_gamma'):
        response = client.post('/api/price', json={'model': model, 'S': 100, 'K': 100, 'days': 60})
        assert response.status_code == 200, model
        body = response.get_json()
        assert body['call'] > 0 and body['put'] > 0


def test_greeks_variance_gamma(client):
    response = client.post('/api/greeks', json={'model': 'variance_gamma', 'S': 100, 'K': 100, 'days': 60})
    assert response.status_code == 200
    greeks = response.get_json()['greeks']
    assert 0.0 < greeks['delta_call'] < 1.0
    assert greeks['gamma'] > 0


@pytest.mark.parametrize('payload', [
    {'model': 'sabr'},
    {'model': 'black_scholes', 'S': -1},
    {'model': 'black_scholes', 'S': 'abc'},
    {'model': 'black_scholes', 'days': 0},
    {'model': 'heston', 'integration_method': 'simpson'},
    {'model': 'heston', 'extensions': {'tail_asymmetry': 2.0}},
    {'model': 'heston', 'params': {'V0': 0.04, 'theta': 0.04, 'kappa': 2.0, 'sigma': 0.3, 'rho': -3}},
])
def test_bad_requests_are_400(client, payload):
    response = client.post('/api/price', json=payload)
    assert response.status_code == 400
    assert 'error' in response.get_json()


def test_unknown_route_is_json_404(client):
    response = client.get('/api/nowhere')
    assert response.status_code == 404
    assert 'error' in response.get_json()


def test_implied_vol_round_trip(client):
    price = client.post('/api/price', json={
        'model': 'black_scholes', 'S': 100, 'K': 100, 'r': 0.05, 'days': 90, 'params': {'sigma': 0.3},
    }).get_json()['call']

    for method in ('newton', 'bisection', 'fast'):
        response = client.post('/api/implied-vol', json={
            'S': 100, 'K': 100, 'r': 0.05, 'days': 90, 'price': price, 'method': method,
        })
        assert response.status_code == 200, method
        body = response.get_json()
        assert body['implied_volatility'] == pytest.approx(0.3, abs=1e-3)
        assert body['repriced'] == pytest.approx(price, abs=1e-2)

    missing = client.post('/api/implied-vol', json={'S': 100, 'K': 100, 'days': 90})
    assert missing.status_code == 400


def test_calibrate_single_point_grid(client):
    response = client.post('/api/calibrate', json={
        'S': 100, 'r': 0.05,
        'options': [
            {'strike': 95, 'expiry_days': 30, 'price': 1.2},
            {'strike': 100, 'expiry_days': 60, 'price': 3.1},
        ],
        'grid': {
            'long_term_vol': [0.2, 0.2], 'kappa': [2.0, 2.0], 'sigma': [0.3, 0.3],
            'rho': [-0.7, -0.7], 'current_vol': [0.2, 0.2],
        },
        'max_passes': 1,
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body['state'] == 'converged'
    assert body['iterations'] == 1
    assert body['params']['kappa'] == pytest.approx(2.0)
    assert len(body['metrics']['individual_errors']) == 2


def test_calibrate_requires_options(client):
    assert client.post('/api/calibrate', json={}).status_code == 400
    bad = client.post('/api/calibrate', json={'options': [{'strike': 100}]})
    assert bad.status_code == 400


def test_fit_vg_from_returns(client):
    returns = np.random.default_rng(7).normal(0.0, 0.01, size=60).tolist()
    response = client.post('/api/fit-vg', json={'returns': returns})
    assert response.status_code == 200
    body = response.get_json()
    assert body['converged'] is True
    assert 0.0 <= body['goodness_of_fit'] <= 1.0
    assert body['summary'].startswith("VG Parameters:")


def test_fit_vg_from_prices(client):
    response = client.post('/api/fit-vg', json={'prices': random_walk_prices(n=40, seed=3)})
    assert response.status_code == 200
    body = response.get_json()
    assert body['observations'] == 39
    assert body['summary'].startswith("VG Parameters:")


def test_fit_vg_input_errors(client):
    assert client.post('/api/fit-vg', json={}).status_code == 400
    assert client.post('/api/fit-vg', json={'returns': [0.01] * 5}).status_code == 400
    assert client.post('/api/fit-vg', json={'prices': [100, 101, 102]}).status_code == 400


def test_fit_vg_does_not_read_server_files(client, tmp_path):
    secret = tmp_path / 'prices.csv'
    secret.write_text("Date,Open,High,Low,Close\n2024-01-02,1,1,1,s3cr3t-value\n")
    response = client.post('/api/fit-vg', json={'path': str(secret)})
    assert response.status_code == 400
    body = response.get_json()
    assert 's3cr3t' not in body['error']
    assert "'returns' or 'prices'" in body['error']


def test_risk_curve_stock(client):
    response = client.post('/api/risk-curve', json={
        'mid_price': 100, 'r': 0.05, 'increments': 10,
        'positions': [{'symbol': 'XYZ', 'asset_class': 'STK', 'size': 10, 'market_price': 100}],
    })
    assert response.status_code == 200
    body = response.get_json()
    assert len(body['points']) == 11
    assert body['max_pl'] == pytest.approx(50.0)
    assert body['min_pl'] == pytest.approx(-50.0)


def test_risk_curve_option_position(client):
    response = client.post('/api/risk-curve', json={
        'mid_price': 100, 'r': 0.05, 'increments': 20, 'today': '2025-01-02',
        'positions': [{'symbol': 'XYZ C', 'asset_class': 'OPT', 'strike': 100, 'is_call': True,
                       'expiration': '2025-03-03', 'size': 1, 'market_price': 4.0,
                       'volatility': 0.25, 'multiplier': 100}],
    })
    assert response.status_code == 200
    pls = [p['pl'] for p in response.get_json()['points']]
    assert pls == sorted(pls)


def test_risk_curve_bad_position(client):
    response = client.post('/api/risk-curve', json={'positions': [{'asset_class': 'STK'}]})
    assert response.status_code == 400
