from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import with_settings
from medportal import config
from medportal.db import Database
from medportal.main import _normalise_path_for_metrics, create_app


def test_health_reports_connected_database(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['database'] == 'connected'
    assert body['backend'] == 'sqlite'
    assert body['environment'] == 'test'
    assert body['timestamp'].endswith('Z')
    assert body['uptime'] >= 0


def test_health_is_503_when_database_unreachable(tmp_path, notifier, settings):
    broken = Database.from_url(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'portal.db'}")
    app = create_app(database=broken, notifier=notifier, settings=settings)
    with TestClient(app) as client:
        resp = client.get('/health')
    assert resp.status_code == 503
    assert resp.json()['database'] == 'unreachable'


def test_metrics_endpoint_exposes_request_counters(client):
    client.get('/health')
    resp = client.get('/metrics')
    assert resp.status_code == 200
    assert 'medportal_requests_total' in resp.text
    assert 'medportal_request_latency_seconds' in resp.text


def test_metrics_paths_are_normalised():
    assert _normalise_path_for_metrics('/api/patient/records/12/download') == '/api/patient/records/:param/download'
    assert _normalise_path_for_metrics('/uploads/1700000000000-3-scan.pdf') == '/uploads/:file'


def test_trace_id_is_echoed(client):
    resp = client.get('/health', headers={'X-Trace-Id': 'abc123'})
    assert resp.headers['X-Trace-Id'] == 'abc123'
    assert client.get('/health').headers['X-Trace-Id']


def test_unknown_route_uses_error_envelope(client):
    resp = client.get('/api/does-not-exist')
    assert resp.status_code == 404
    assert resp.json() == {'error': 'Not Found'}


def test_malformed_body_is_a_400(client):
    resp = client.post('/api/auth/login', content=b'not json', headers={'Content-Type': 'application/json'})
    assert resp.status_code == 400
    assert resp.json()['error'].startswith('Invalid request')


def test_unhandled_error_includes_stack_outside_production(database, notifier, settings):
    def _explode():
        raise RuntimeError('kaboom')

    app = create_app(database=database, notifier=notifier, settings=settings)
    app.add_api_route('/boom', _explode)
    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.get('/boom')
    assert resp.status_code == 500
    body = resp.json()
    assert body['error'] == 'Internal server error'
    assert 'kaboom' in body['stack']

    production = create_app(
        database=database,
        notifier=notifier,
        settings=with_settings(settings, environment='production'),
    )
    production.add_api_route('/boom', _explode)
    with TestClient(production, raise_server_exceptions=False) as client:
        resp = client.get('/boom')
    assert resp.json() == {'error': 'Internal server error'}


@pytest.mark.parametrize(
    'raw, expected',
    [
        ('24h', timedelta(hours=24)),
        ('30m', timedelta(minutes=30)),
        ('7d', timedelta(days=7)),
        ('3600', timedelta(seconds=3600)),
    ],
)
def test_parse_duration(raw, expected):
    assert config.parse_duration(raw) == expected


def test_parse_duration_rejects_garbage():
    with pytest.raises(ValueError):
        config.parse_duration('soon')


def test_production_requires_jwt_secret(monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'production')
    monkeypatch.delenv('JWT_SECRET', raising=False)
    with pytest.raises(RuntimeError):
        config.load_settings()


def test_load_settings_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv('ENVIRONMENT', 'development')
    monkeypatch.setenv('JWT_SECRET', 'from-env')
    monkeypatch.setenv('JWT_EXPIRES_IN', '2h')
    monkeypatch.setenv('MEDPORTAL_UPLOAD_DIR', str(tmp_path / 'files'))
    monkeypatch.setenv('FRONTEND_URL', 'https://portal.example.com')
    monkeypatch.setenv('MEDPORTAL_API_PREFIX', 'v1')
    loaded = config.load_settings()
    assert loaded.jwt_secret == 'from-env'
    assert loaded.jwt_expires == timedelta(hours=2)
    assert loaded.upload_dir == tmp_path / 'files'
    assert 'https://portal.example.com' in loaded.cors_origins
    assert loaded.api_prefix == '/v1'
    assert loaded.sms_configured is False
