import pytest

import notifications
import services
from errors import ForbiddenError
from models import db, Appointment, AppointmentActivity, Doctor, Message, Notification, User


@pytest.fixture
def pair(make_patient, make_doctor, login_as):
    """A patient and a doctor, each with a logged-in client."""
    patient_user_id, patient_id = make_patient(username='pat')
    doctor_user_id, doctor_id = make_doctor(username='doc', full_name='Dana Doctor')
    return {
        'patient_user_id': patient_user_id,
        'patient_id': patient_id,
        'doctor_user_id': doctor_user_id,
        'doctor_id': doctor_id,
        'patient': login_as('pat'),
        'doctor': login_as('doc'),
    }


def book(client, doctor_id, date='2024-06-01T10:00:00', symptoms='anxiety', **extra):
    payload = {'doctor_id': doctor_id, 'date': date, 'symptoms': symptoms}
    payload.update(extra)
    return client.post('/api/appointments', json=payload)


def test_full_lifecycle_builds_activity_log(pair):
    resp = book(pair['patient'], pair['doctor_id'])
    assert resp.status_code == 201
    appt = resp.get_json()['data']
    assert appt['status'] == 'pending'
    assert appt['date'] == '2024-06-01T10:00:00'
    assert appt['type'] == 'online'
    assert appt['duration'] == 30
    assert len(appt['activity_log']) == 1
    first = appt['activity_log'][0]
    assert first['action'] == 'Appointment requested'
    assert first['performed_by'] == 'patient'
    assert first['details'] == 'Request sent to Dr. Dana Doctor'

    resp = pair['doctor'].patch(f"/api/appointments/{appt['id']}",
                                json={'status': 'accepted', 'notes': 'see you then'})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'accepted'
    assert len(data['activity_log']) == 2
    second = data['activity_log'][1]
    assert second['action'] == 'Appointment accepted by doctor'
    assert second['performed_by'] == 'doctor'
    assert second['details'] == 'see you then'

    resp = pair['doctor'].patch(f"/api/appointments/{appt['id']}", json={'status': 'completed'})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'completed'
    assert [e['action'] for e in data['activity_log']] == [
        'Appointment requested',
        'Appointment accepted by doctor',
        'Appointment completed',
    ]
    assert data['activity_log'][2]['details'] == 'Status: completed'


def test_create_with_unknown_doctor_returns_404(pair):
    resp = book(pair['patient'], 9999)
    assert resp.status_code == 404
    assert resp.get_json()['field'] == 'doctor_id'
    assert Appointment.query.count() == 0


def test_create_requires_symptoms(pair):
    resp = pair['patient'].post('/api/appointments', json={
        'doctor_id': pair['doctor_id'], 'date': '2024-06-01T10:00:00'
    })
    assert resp.status_code == 400
    assert resp.get_json()['field'] == 'symptoms'
    assert Appointment.query.count() == 0


def test_create_rejects_blank_symptoms(pair):
    resp = book(pair['patient'], pair['doctor_id'], symptoms='   ')
    assert resp.status_code == 400
    assert resp.get_json()['field'] == 'symptoms'


def test_doctor_cannot_create_appointment(pair):
    resp = book(pair['doctor'], pair['doctor_id'])
    assert resp.status_code == 403


def test_create_requires_login(client, pair):
    resp = book(client, pair['doctor_id'])
    assert resp.status_code == 401


def test_timezone_aware_dates_are_stored_as_utc(pair):
    resp = book(pair['patient'], pair['doctor_id'], date='2024-06-01T12:00:00+02:00', type='in-person')
    data = resp.get_json()['data']
    assert data['date'] == '2024-06-01T10:00:00'
    assert data['type'] == 'in-person'


def test_illegal_transition_returns_409_and_keeps_log(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    assert pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'rejected'}).status_code == 200

    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    assert resp.status_code == 409
    body = resp.get_json()
    assert body['success'] is False
    assert body['field'] == 'status'

    data = pair['doctor'].get(f'/api/appointments/{appt_id}').get_json()['data']
    assert data['status'] == 'rejected'
    assert len(data['activity_log']) == 2


def test_patient_cannot_accept(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['patient'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    assert resp.status_code == 403
    db.session.expire_all()
    assert db.session.get(Appointment, appt_id).status == 'pending'


def test_doctor_cannot_cancel(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'cancelled'})
    assert resp.status_code == 403


def test_patient_cancels_accepted_appointment(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    resp = pair['patient'].patch(f'/api/appointments/{appt_id}', json={'status': 'cancelled'})
    assert resp.status_code == 200
    log = resp.get_json()['data']['activity_log']
    assert log[-1]['action'] == 'Appointment cancelled by patient'
    assert log[-1]['performed_by'] == 'patient'


def test_status_endpoint(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}/status',
                                json={'status': 'accepted', 'notes': 'confirmed'})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'accepted'
    assert data['notes'] == 'confirmed'

    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}/status', json={'status': 'bogus'})
    assert resp.status_code == 400
    assert resp.get_json()['field'] == 'status'


def test_empty_update_is_rejected(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['patient'].patch(f'/api/appointments/{appt_id}', json={})
    assert resp.status_code == 400


def test_doctor_only_fields(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']

    resp = pair['patient'].patch(f'/api/appointments/{appt_id}', json={'doctor_notes': 'self-diagnosis'})
    assert resp.status_code == 403
    assert resp.get_json()['field'] == 'doctor_notes'

    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}', json={
        'doctor_notes': 'review sleep pattern',
        'prescription': 'melatonin 3mg',
        'follow_up_date': '2024-07-01T09:00:00',
    })
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'pending'
    assert data['prescription'] == 'melatonin 3mg'
    assert data['follow_up_date'] == '2024-07-01T09:00:00'
    last = data['activity_log'][-1]
    assert last['action'] == 'Appointment updated'
    assert last['performed_by'] == 'doctor'
    assert last['details'] == 'review sleep pattern'


def test_rating_requires_completed_appointment(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['patient'].patch(f'/api/appointments/{appt_id}', json={'rating': 5})
    assert resp.status_code == 400
    assert resp.get_json()['field'] == 'rating'


def test_rating_updates_doctor_average(pair):
    doctor = pair['doctor']
    patient = pair['patient']
    ids = []
    for day in ('2024-06-01T10:00:00', '2024-06-02T10:00:00'):
        appt_id = book(patient, pair['doctor_id'], date=day).get_json()['data']['id']
        doctor.patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
        doctor.patch(f'/api/appointments/{appt_id}', json={'status': 'completed'})
        ids.append(appt_id)

    assert patient.patch(f'/api/appointments/{ids[0]}', json={'rating': 5, 'review': 'great'}).status_code == 200
    resp = patient.patch(f'/api/appointments/{ids[1]}', json={'rating': 4})
    assert resp.status_code == 200
    assert resp.get_json()['data']['rating'] == 4

    profile = doctor.get(f"/api/doctors/{pair['doctor_id']}").get_json()['data']
    assert profile['rating'] == 4.5

    resp = doctor.patch(f'/api/appointments/{ids[0]}', json={'rating': 1})
    assert resp.status_code == 403


def test_deleting_rated_appointment_recomputes_doctor_rating(pair):
    doctor = pair['doctor']
    patient = pair['patient']
    ids = []
    for day, stars in (('2024-06-01T10:00:00', 1), ('2024-06-02T10:00:00', 5)):
        appt_id = book(patient, pair['doctor_id'], date=day).get_json()['data']['id']
        doctor.patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
        doctor.patch(f'/api/appointments/{appt_id}', json={'status': 'completed'})
        patient.patch(f'/api/appointments/{appt_id}', json={'rating': stars})
        ids.append(appt_id)

    profile_url = f"/api/doctors/{pair['doctor_id']}"
    assert doctor.get(profile_url).get_json()['data']['rating'] == 3.0

    assert patient.delete(f'/api/appointments/{ids[0]}').status_code == 200
    assert doctor.get(profile_url).get_json()['data']['rating'] == 5.0

    assert patient.delete(f'/api/appointments/{ids[1]}').status_code == 200
    assert doctor.get(profile_url).get_json()['data']['rating'] == 0


def test_outsider_cannot_view_or_update(pair, make_patient, login_as):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    make_patient(username='eve')
    eve = login_as('eve')
    assert eve.get(f'/api/appointments/{appt_id}').status_code == 403
    assert eve.patch(f'/api/appointments/{appt_id}', json={'status': 'cancelled'}).status_code == 403
    assert eve.delete(f'/api/appointments/{appt_id}').status_code == 403


def test_get_unknown_appointment(pair):
    assert pair['patient'].get('/api/appointments/4242').status_code == 404


def test_get_round_trip(pair):
    created = book(pair['patient'], pair['doctor_id'], health_condition='insomnia', duration=45).get_json()['data']
    fetched = pair['patient'].get(f"/api/appointments/{created['id']}").get_json()['data']
    for key in ('id', 'doctor_id', 'date', 'status', 'symptoms', 'health_condition', 'type', 'duration'):
        assert fetched[key] == created[key]
    assert fetched['health_condition'] == 'insomnia'
    assert fetched['duration'] == 45


def test_delete_then_update_returns_404(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['patient'].delete(f'/api/appointments/{appt_id}')
    assert resp.status_code == 200
    assert AppointmentActivity.query.filter_by(appointment_id=appt_id).count() == 0

    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    assert resp.status_code == 404


def test_delete_detaches_messages_and_notifications(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['patient'].post('/api/messages', json={
        'receiver_id': pair['doctor_user_id'], 'content': 'running late', 'appointment_id': appt_id
    })
    assert resp.status_code == 201

    pair['patient'].delete(f'/api/appointments/{appt_id}')

    db.session.expire_all()
    message = Message.query.one()
    assert message.appointment_id is None
    assert message.content == 'running late'
    assert Notification.query.filter_by(appointment_id=appt_id).count() == 0
    assert Notification.query.filter_by(user_id=pair['doctor_user_id']).count() == 1


def test_list_is_scoped_and_newest_first(pair, make_patient, login_as):
    book(pair['patient'], pair['doctor_id'], date='2024-06-01T10:00:00')
    book(pair['patient'], pair['doctor_id'], date='2024-06-03T10:00:00')
    make_patient(username='other')
    other = login_as('other')
    book(other, pair['doctor_id'], date='2024-06-02T10:00:00')

    resp = pair['patient'].get('/api/appointments')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['count'] == 2
    assert [a['date'] for a in body['data']] == ['2024-06-03T10:00:00', '2024-06-01T10:00:00']
    assert all(a['patient_id'] == pair['patient_id'] for a in body['data'])
    # Patients see the doctor, not themselves
    assert body['data'][0]['doctor']['full_name'] == 'Dana Doctor'
    assert 'patient' not in body['data'][0]

    doctor_view = pair['doctor'].get('/api/appointments').get_json()
    assert doctor_view['count'] == 3
    assert doctor_view['data'][0]['patient']['id'] == pair['patient_id']
    assert 'doctor' not in doctor_view['data'][0]


def test_list_filters(pair):
    first = book(pair['patient'], pair['doctor_id'], date='2024-06-01T10:00:00').get_json()['data']['id']
    book(pair['patient'], pair['doctor_id'], date='2024-06-10T10:00:00', type='in-person')
    pair['doctor'].patch(f'/api/appointments/{first}', json={'status': 'accepted'})

    accepted = pair['patient'].get('/api/appointments?status=accepted').get_json()['data']
    assert [a['id'] for a in accepted] == [first]

    in_person = pair['patient'].get('/api/appointments?type=in-person').get_json()['data']
    assert [a['type'] for a in in_person] == ['in-person']

    window = pair['patient'].get(
        '/api/appointments?start_date=2024-06-05T00:00:00&end_date=2024-06-30T00:00:00'
    ).get_json()['data']
    assert [a['date'] for a in window] == ['2024-06-10T10:00:00']

    assert pair['patient'].get('/api/appointments?status=archived').status_code == 400


def test_list_for_user_without_profile_is_empty(app):
    user = User(username='bare', role='doctor', full_name='No Profile')
    user.email = 'bare@example.com'
    user.set_password('password123')
    db.session.add(user)
    db.session.commit()
    assert services.list_appointments_for_user(user) == []


def test_counterpart_notified_on_request_and_accept(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    doctor_notes = Notification.query.filter_by(user_id=pair['doctor_user_id']).all()
    assert [n.notification_type for n in doctor_notes] == ['appointment_pending']
    assert doctor_notes[0].sender_id == pair['patient_user_id']

    pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    patient_notes = Notification.query.filter_by(user_id=pair['patient_user_id']).all()
    assert [n.notification_type for n in patient_notes] == ['appointment_accepted']
    assert patient_notes[0].appointment_id == appt_id


def test_email_failure_does_not_undo_status_change(pair, monkeypatch):
    def broken_send(app, recipient, subject, body):
        raise ConnectionRefusedError('smtp down')

    monkeypatch.setattr(notifications, '_send_email', broken_send)

    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    assert resp.status_code == 200

    db.session.expire_all()
    assert db.session.get(Appointment, appt_id).status == 'accepted'
    assert Notification.query.filter_by(user_id=pair['patient_user_id']).count() == 1


def test_notifier_crash_does_not_undo_status_change(pair, monkeypatch):
    def broken_notify(appointment, actor):
        raise RuntimeError('notifier unavailable')

    monkeypatch.setattr(services, 'notify_appointment_event', broken_notify)

    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    resp = pair['doctor'].patch(f'/api/appointments/{appt_id}', json={'status': 'accepted'})
    assert resp.status_code == 200
    db.session.expire_all()
    assert db.session.get(Appointment, appt_id).status == 'accepted'


def test_update_service_raises_for_wrong_actor(pair):
    appt_id = book(pair['patient'], pair['doctor_id']).get_json()['data']['id']
    patient_user = db.session.get(User, pair['patient_user_id'])
    with pytest.raises(ForbiddenError):
        services.update_appointment_status(appt_id, patient_user, 'completed')
    assert db.session.get(Doctor, pair['doctor_id']).rating == 0
