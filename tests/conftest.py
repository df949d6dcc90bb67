import os
import sys
import tempfile
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure the repository root is on sys.path so tests can import the medportal package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'development')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret')
os.environ.setdefault('MEDPORTAL_DATA_DIR', tempfile.mkdtemp(prefix='medportal-tests-'))
os.environ.setdefault('MEDPORTAL_DB_BACKEND', 'sqlite')
for _name in ('TWILIO_ACCOUNT_SID', 'TWILIO_AUTH_TOKEN', 'TWILIO_PHONE_NUMBER', 'GOOGLE_CLIENT_ID'):
    os.environ.pop(_name, None)

from medportal.config import AppSettings  # noqa: E402
from medportal.db import Database  # noqa: E402
from medportal.notifications import SmsNotifier  # noqa: E402


def _env_flag(name: str) -> bool:
    return os.getenv(name, '0').lower() in {'1', 'true', 'yes'}


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--run-postgres',
        action='store_true',
        default=_env_flag('RUN_PG_TESTS'),
        dest='run_postgres',
        help='Execute tests marked with @pytest.mark.postgres that require PostgreSQL.',
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        'markers',
        'postgres: Tests that require a PostgreSQL database and are skipped unless '
        'RUN_PG_TESTS=1 or --run-postgres is provided.',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if config.getoption('run_postgres'):
        return
    skip_marker = pytest.mark.skip(reason='Requires PostgreSQL. Set RUN_PG_TESTS=1 or pass --run-postgres to enable.')
    for item in items:
        if 'postgres' in item.keywords:
            item.add_marker(skip_marker)


class FakeResponse:
    def __init__(self, payload: Dict[str, Any]):
        self._payload = payload

    def json(self) -> Dict[str, Any]:
        return self._payload


class RecordingTransport:
    """Stands in for ``secure_post``; records each Twilio call instead of sending it."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def __call__(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({'url': url, **kwargs})
        if self.error is not None:
            raise self.error
        return FakeResponse({'sid': f'SM{len(self.calls):04d}'})

    def bodies(self) -> List[str]:
        return [call['data']['Body'] for call in self.calls]

    def recipients(self) -> List[str]:
        return [call['data']['To'] for call in self.calls]


@dataclass
class Account:
    user: Dict[str, Any]
    token: str

    @property
    def id(self) -> int:
        return self.user['id']

    @property
    def headers(self) -> Dict[str, str]:
        return {'Authorization': f'Bearer {self.token}'}


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        environment='test',
        jwt_secret='test-jwt-secret',
        jwt_expires=timedelta(hours=24),
        upload_dir=tmp_path / 'uploads',
        google_client_id='test-client-id.apps.googleusercontent.com',
        twilio_account_sid='AC0000000000',
        twilio_auth_token='twilio-token',
        twilio_phone_number='+15550000000',
    )


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database.from_url(
        f"sqlite:///{tmp_path / 'medportal-test.db'}",
        connect_args={'check_same_thread': False},
    )
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def sms_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def notifier(settings: AppSettings, sms_transport: RecordingTransport) -> SmsNotifier:
    return SmsNotifier(settings, transport=sms_transport)


@pytest.fixture
def app(database: Database, notifier: SmsNotifier, settings: AppSettings):
    from medportal.main import create_app

    return create_app(database=database, notifier=notifier, settings=settings)


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def upload_dir(settings: AppSettings) -> Path:
    return settings.upload_dir


@pytest.fixture
def register(client: TestClient) -> Callable[..., Account]:
    def _register(
        username: str,
        role: str = 'patient',
        *,
        password: str = 'pw123456',
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> Account:
        resp = client.post(
            '/api/auth/register',
            json={
                'name': username.title(),
                'username': username,
                'email': email or f'{username}@example.com',
                'password': password,
                'role': role,
                'phone_number': phone_number,
            },
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return Account(user=body['user'], token=body['token'])

    return _register


@pytest.fixture
def patient(register) -> Account:
    return register('alice', 'patient', phone_number='+15551110000')


@pytest.fixture
def clinician(register) -> Account:
    return register('bob', 'clinician', phone_number='+15552220000')


@pytest.fixture
def approved(client: TestClient, patient: Account, clinician: Account) -> int:
    """Submit and approve an access request from ``clinician`` to ``patient``."""

    resp = client.post(
        '/api/clinician/access-request',
        json={'patient_id': patient.id, 'reason': 'checkup'},
        headers=clinician.headers,
    )
    assert resp.status_code == 201, resp.text
    request_id = resp.json()['request']['id']
    resp = client.put(f'/api/patient/access-requests/{request_id}/approve', headers=patient.headers)
    assert resp.status_code == 200, resp.text
    return request_id


def upload_pdf(
    client: TestClient,
    account: Account,
    patient_id: int,
    *,
    title: str = 'Bloodwork',
    content: bytes = b'%PDF-1.4 test document',
    filename: str = 'bloodwork.pdf',
    content_type: str = 'application/pdf',
):
    return client.post(
        '/api/clinician/records/upload',
        data={'patient_id': str(patient_id), 'title': title, 'description': 'Quarterly panel'},
        files={'file': (filename, content, content_type)},
        headers=account.headers,
    )


def with_settings(settings: AppSettings, **changes: Any) -> AppSettings:
    return replace(settings, **changes)
