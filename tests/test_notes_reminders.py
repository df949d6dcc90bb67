"""Doctor notes and appointment reminders."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, select

from medportal import reminders
from medportal.auth import RequestContext
from medportal.db.models import audit_logs
from medportal.db.models import reminders as reminders_table


def test_add_note_without_access_grant(client, database, patient, clinician):
    resp = client.post(
        '/api/notes/add',
        json={
            'patient_username': 'alice',
            'note': 'Take ibuprofen twice daily.',
            'appointment_date': '2030-01-15T09:30:00Z',
            'reminder': True,
        },
        headers=clinician.headers,
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body['message'] == 'Doctor note added successfully'
    assert body['note']['patient_user_id'] == patient.id
    assert body['note']['provider_user_id'] == clinician.id
    assert body['note']['reminder'] is True
    assert body['note']['appointment_date'] == '2030-01-15T09:30:00Z'

    action = database.query_one(select(audit_logs.c.action).where(audit_logs.c.actor_id == clinician.id))
    assert action == {'action': 'note_added'}


def test_add_note_validation(client, clinician, register):
    resp = client.post('/api/notes/add', json={'patient_username': 'alice'}, headers=clinician.headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Missing required fields: patient_username, note'}

    register('carol', 'clinician')
    resp = client.post(
        '/api/notes/add',
        json={'patient_username': 'carol', 'note': 'hello'},
        headers=clinician.headers,
    )
    assert resp.status_code == 404
    assert resp.json() == {'error': 'Patient not found'}


def test_notes_me_orders_by_appointment_with_undated_last(client, patient, clinician):
    for note, when in (
        ('undated', None),
        ('older', '2030-01-01T10:00:00Z'),
        ('newer', '2030-06-01T10:00:00Z'),
    ):
        payload = {'patient_username': 'alice', 'note': note}
        if when:
            payload['appointment_date'] = when
        assert client.post('/api/notes/add', json=payload, headers=clinician.headers).status_code == 201

    resp = client.get('/api/notes/me', headers=patient.headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body['count'] == 3
    assert [item['note'] for item in body['notes']] == ['newer', 'older', 'undated']
    assert body['notes'][0]['provider_name'] == 'bob'
    assert body['notes'][0]['provider_email'] == 'bob@example.com'
    assert body['notes'][0]['reminder_sent'] is False

    assert client.get('/api/notes/me', headers=clinician.headers).status_code == 403


def test_schedule_requires_approved_access(client, patient, clinician):
    resp = client.post(
        '/api/reminders/schedule',
        json={'patient_id': patient.id, 'appointment_date': '2030-01-15T09:30:00Z'},
        headers=clinician.headers,
    )
    assert resp.status_code == 403

    resp = client.post('/api/reminders/schedule', json={'patient_id': patient.id}, headers=clinician.headers)
    assert resp.status_code == 400


def test_schedule_pending_and_send(client, database, patient, clinician, approved, sms_transport):
    soon = datetime.now(timezone.utc) + timedelta(hours=3)
    later = datetime.now(timezone.utc) + timedelta(days=3)
    soon_id = client.post(
        '/api/reminders/schedule',
        json={
            'patient_id': patient.id,
            'appointment_date': soon.isoformat(),
            'appointment_description': 'Follow-up visit',
        },
        headers=clinician.headers,
    )
    assert soon_id.status_code == 201, soon_id.text
    assert soon_id.json()['message'] == 'Reminder scheduled successfully'
    soon_id = soon_id.json()['reminder']['id']
    client.post(
        '/api/reminders/schedule',
        json={'patient_id': patient.id, 'appointment_date': later.isoformat()},
        headers=clinician.headers,
    )

    pending = client.get('/api/reminders/pending', headers=clinician.headers).json()
    assert pending['count'] == 1
    item = pending['reminders'][0]
    assert item['id'] == soon_id
    assert item['phone_number'] == '+15551110000'
    assert item['username'] == 'alice'

    sms_transport.calls.clear()
    resp = client.put(f'/api/reminders/{soon_id}/send', headers=clinician.headers)
    assert resp.status_code == 200
    assert resp.json() == {'message': 'Reminder marked as sent', 'reminderId': soon_id, 'smsDelivered': True}
    assert sms_transport.recipients() == ['+15551110000']
    assert sms_transport.bodies()[0].startswith('Appointment Reminder: Follow-up visit on ')

    again = client.put(f'/api/reminders/{soon_id}/send', headers=clinician.headers)
    assert again.status_code == 409
    assert client.get('/api/reminders/pending', headers=clinician.headers).json()['count'] == 0

    actions = [
        row['action']
        for row in database.query_many(
            select(audit_logs.c.action).where(audit_logs.c.target_type == 'reminder').order_by(audit_logs.c.id)
        )
    ]
    assert actions == ['reminder_scheduled', 'reminder_scheduled', 'reminder_sent']


def test_reminders_are_scoped_to_their_clinician(client, database, patient, clinician, approved, register):
    reminder_id = database.insert(
        insert(reminders_table).values(
            patient_id=patient.id,
            clinician_id=clinician.id,
            appointment_date=datetime.now(timezone.utc) + timedelta(hours=1),
        )
    )
    other = register('carol', 'clinician')
    assert client.get('/api/reminders/pending', headers=other.headers).json()['count'] == 0
    assert client.put(f'/api/reminders/{reminder_id}/send', headers=other.headers).status_code == 404


def test_pending_window_boundaries(database, patient, clinician):
    now = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)
    ctx = RequestContext(user_id=clinician.id, username='bob', role='clinician')
    for offset in (timedelta(0), timedelta(hours=24), timedelta(hours=24, seconds=1), timedelta(hours=-1)):
        database.insert(
            insert(reminders_table).values(
                patient_id=patient.id,
                clinician_id=clinician.id,
                appointment_date=now + offset,
            )
        )
    due = reminders.pending(database, ctx, now=now)
    assert [item['appointment_date'] for item in due] == ['2030-03-02T12:00:00Z']
