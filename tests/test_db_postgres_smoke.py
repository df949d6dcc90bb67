import os

import pytest
from sqlalchemy import insert, select, update

from medportal.db import Database
from medportal.db.config import postgres_url_from_env
from medportal.db.models import access_requests, metadata, users
from medportal.errors import ConstraintViolationError


@pytest.fixture
def pg_database():
    db = Database.from_url(os.getenv('MEDPORTAL_TEST_DATABASE_URL') or postgres_url_from_env())
    metadata.drop_all(db.engine)
    db.create_schema()
    yield db
    metadata.drop_all(db.engine)
    db.dispose()


@pytest.mark.postgres
def test_postgres_crud_smoke(pg_database):
    assert pg_database.backend == 'postgres'
    assert pg_database.ping() is True

    patient_id = pg_database.insert(
        insert(users).values(username='pg-patient', email='pg-patient@example.test', password_hash='x', role='patient')
    )
    clinician_id = pg_database.insert(
        insert(users).values(username='pg-doc', email='pg-doc@example.test', password_hash='x', role='clinician')
    )
    fetched = pg_database.query_one(select(users.c.created_at).where(users.c.id == patient_id))
    assert fetched['created_at'].tzinfo is not None

    request_id = pg_database.insert(
        insert(access_requests).values(patient_id=patient_id, clinician_id=clinician_id, reason='smoke')
    )
    with pytest.raises(ConstraintViolationError):
        pg_database.insert(
            insert(access_requests).values(patient_id=patient_id, clinician_id=clinician_id, reason='again')
        )

    changed = pg_database.execute(
        update(access_requests)
        .where(access_requests.c.id == request_id, access_requests.c.status == 'pending')
        .values(status='approved')
    )
    assert changed == 1
