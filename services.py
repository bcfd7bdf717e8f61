"""
Domain operations behind the REST endpoints.

Each public function runs inside the request's SQLAlchemy session and either
commits one unit of work or raises an ``errors.ApiError`` subclass. Callers
pass the authenticated ``User``; authorization checks live here, next to the
data they protect.
"""

import logging
from datetime import timezone

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import (
    ValidationError, AuthError, ForbiddenError, NotFoundError, IllegalTransitionError, InternalError
)
from models import (
    db, User, Patient, Doctor, Appointment, Message, Notification, AuditLog, _hash_value
)
from notifications import notify_appointment_event
from schemas import PatientProfileSchema, DoctorProfileSchema, load_or_raise

logger = logging.getLogger(__name__)

# Appointment fields only one side of the appointment may write
DOCTOR_ONLY_FIELDS = ('doctor_notes', 'prescription', 'follow_up_date')
PATIENT_ONLY_FIELDS = ('rating', 'review')

PATIENT_EDITABLE_FIELDS = ('full_name', 'age', 'gender', 'contact_number', 'condition',
                           'severity', 'medical_history')
DOCTOR_EDITABLE_FIELDS = ('full_name', 'specialization', 'bio', 'experience', 'consultation_fee',
                          'availability', 'education', 'languages', 'hospital_affiliation',
                          'consultation_types')


def _naive_utc(value):
    """Store datetimes as naive UTC so PostgreSQL and SQLite agree."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError as err:
        db.session.rollback()
        logger.exception('Database commit failed')
        raise InternalError() from err


def _notify(appointment, actor):
    try:
        notify_appointment_event(appointment, actor)
    except Exception:
        logger.exception('Notification for appointment %s failed', appointment.id)


def record_audit(user, action, description, ip_address=None, commit=True):
    db.session.add(AuditLog(
        user_id=user.id,
        action=action,
        description=description,
        ip_address=ip_address
    ))
    if commit:
        _commit()


# ---------------------
# Identity & profiles
# ---------------------

def _build_profile(user, role, profile_data):
    profile_data = dict(profile_data)
    full_name = profile_data.pop('full_name', None) or user.full_name
    if role == 'patient':
        medical_history = profile_data.pop('medical_history', None)
        profile = Patient(user_id=user.id, full_name=full_name, **profile_data)
        profile.medical_history = medical_history
    else:
        profile = Doctor(user_id=user.id, full_name=full_name, **profile_data)
    return profile


def _load_profile(role, payload):
    schema = PatientProfileSchema() if role == 'patient' else DoctorProfileSchema()
    return load_or_raise(schema, payload, prefix='profile')


def _ensure_license_free(license_number, exclude_doctor_id=None):
    query = Doctor.query.filter(func.lower(Doctor.license_number) == license_number.strip().lower())
    if exclude_doctor_id is not None:
        query = query.filter(Doctor.id != exclude_doctor_id)
    if query.first():
        raise ValidationError('License number already registered', field='profile.license_number')


def register_user(data, min_password_length=8, ip_address=None):
    """Create a User and its role profile in a single transaction."""
    username = data['username'].strip().lower()
    email = data['email'].strip().lower()
    role = data['role']

    if len(data['password']) < min_password_length:
        raise ValidationError(
            f'Password must be at least {min_password_length} characters long', field='password'
        )
    if User.query.filter(func.lower(User.username) == username).first():
        raise ValidationError('Username already taken', field='username')
    if User.query.filter_by(email_hash=_hash_value(email)).first():
        raise ValidationError('Email already registered', field='email')

    profile_data = _load_profile(role, data.get('profile') or {})
    if role == 'doctor':
        _ensure_license_free(profile_data['license_number'])

    try:
        user = User(username=username, role=role, full_name=data['full_name'].strip(), is_active=True)
        user.email = email
        user.set_password(data['password'])
        db.session.add(user)
        # Flush to obtain user.id; nothing is visible to other sessions until commit
        db.session.flush()

        db.session.add(_build_profile(user, role, profile_data))
        record_audit(user, 'register', f'{role} account {username} registered', ip_address, commit=False)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError('An account with these details already exists')
    except SQLAlchemyError as err:
        db.session.rollback()
        logger.exception('Registration of %s failed', username)
        raise InternalError() from err

    logger.info('Registered %s user %s', role, user.id)
    return user


def authenticate(login_input, password):
    login_input = login_input.strip()
    user = User.query.filter(func.lower(User.username) == login_input.lower()).first()
    if not user:
        user = User.query.filter_by(email_hash=_hash_value(login_input)).first()

    if not user or not user.check_password(password):
        raise AuthError('Invalid username or password')
    if not user.is_active:
        raise ForbiddenError('Account is deactivated. Please contact support.')
    return user


def get_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError('User not found')
    return user


def _require_profile(user, role=None):
    if role is not None and user.role != role:
        raise ForbiddenError(f'Only {role}s can perform this action')
    profile = user.profile
    if profile is None:
        raise NotFoundError(f'{user.role.capitalize()} profile not found')
    return profile


def has_shared_appointment(doctor_id, patient_id):
    """Check if doctor and patient have any appointments together"""
    return Appointment.query.filter_by(doctor_id=doctor_id, patient_id=patient_id).first() is not None


def get_patient(patient_id, viewer):
    patient = db.session.get(Patient, patient_id)
    if not patient:
        raise NotFoundError('Patient not found')
    if viewer.role == 'patient' and patient.user_id == viewer.id:
        return patient
    if viewer.role == 'doctor' and viewer.doctor_profile is not None \
            and has_shared_appointment(viewer.doctor_profile.id, patient.id):
        return patient
    raise ForbiddenError('Access denied')


def update_patient_profile(user, data):
    patient = _require_profile(user, 'patient')
    for field in PATIENT_EDITABLE_FIELDS:
        if field in data:
            setattr(patient, field, data[field])
    # Account and profile carry the same display name
    if data.get('full_name'):
        user.full_name = data['full_name']
    _commit()
    return patient


def create_doctor_profile(user, data):
    if user.role != 'doctor':
        raise ForbiddenError('Only doctors can create a doctor profile')
    if user.doctor_profile is not None:
        raise ValidationError('Doctor profile already exists')
    _ensure_license_free(data['license_number'])
    doctor = _build_profile(user, 'doctor', data)
    db.session.add(doctor)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError('Doctor profile already exists')
    return doctor


def update_doctor_profile(user, data):
    doctor = _require_profile(user, 'doctor')
    if 'license_number' in data:
        raise ValidationError('License number cannot be changed', field='license_number')
    for field in DOCTOR_EDITABLE_FIELDS:
        if field in data:
            setattr(doctor, field, data[field])
    if data.get('full_name'):
        user.full_name = data['full_name']
    _commit()
    return doctor


# ---------------------
# Doctor directory
# ---------------------

def list_doctors(filters=None):
    filters = filters or {}
    query = Doctor.query
    if filters.get('specialization'):
        query = query.filter(func.lower(Doctor.specialization) == filters['specialization'].strip().lower())
    if filters.get('min_experience') is not None:
        query = query.filter(Doctor.experience >= filters['min_experience'])
    if filters.get('max_fee') is not None:
        query = query.filter(Doctor.consultation_fee <= filters['max_fee'])
    if filters.get('verification_status'):
        query = query.filter(Doctor.verification_status == filters['verification_status'])
    return query.order_by(Doctor.rating.desc(), Doctor.id.asc()).all()


def get_doctor(doctor_id):
    doctor = db.session.get(Doctor, doctor_id)
    if not doctor:
        raise NotFoundError('Doctor not found')
    return doctor


# ---------------------
# Appointment lifecycle
# ---------------------

def create_appointment(user, data):
    patient = _require_profile(user, 'patient')
    doctor = db.session.get(Doctor, data['doctor_id'])
    if not doctor:
        raise NotFoundError('Doctor not found', field='doctor_id')

    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        date=_naive_utc(data['date']),
        status='pending',
        appointment_type=data.get('appointment_type') or 'online',
        duration=data.get('duration') or 30
    )
    appointment.symptoms = data['symptoms'].strip()
    appointment.health_condition = data.get('health_condition')
    appointment.log_activity(
        Appointment.STATUS_ACTIONS['pending'],
        'patient',
        f'Request sent to Dr. {doctor.full_name}'
    )
    db.session.add(appointment)
    _commit()
    logger.info('Appointment %s requested by patient %s with doctor %s', appointment.id, patient.id, doctor.id)

    _notify(appointment, user)
    return appointment


def _load_for_participant(appointment_id, user):
    appointment = db.session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError('Appointment not found')
    role = appointment.participant_role(user)
    if role is None:
        raise ForbiddenError('Access denied')
    return appointment, role


def get_appointment(appointment_id, user):
    appointment, _ = _load_for_participant(appointment_id, user)
    return appointment


def update_appointment(appointment_id, user, data):
    """Apply a status change and/or field updates, appending one activity entry."""
    appointment, role = _load_for_participant(appointment_id, user)

    if not data:
        raise ValidationError('No changes supplied')

    for field in DOCTOR_ONLY_FIELDS:
        if field in data and role != 'doctor':
            raise ForbiddenError(f'Only the doctor can set {field}', field=field)
    for field in PATIENT_ONLY_FIELDS:
        if field in data:
            if role != 'patient':
                raise ForbiddenError(f'Only the patient can set {field}', field=field)
            if appointment.status != 'completed':
                raise ValidationError('Can only rate completed appointments', field=field)

    new_status = data.get('status')
    if new_status is not None:
        required_actor = Appointment.STATUS_ACTORS.get(new_status)
        if required_actor is not None and role != required_actor:
            raise ForbiddenError(f'Only the {required_actor} can set status to {new_status}', field='status')
        if not appointment.can_transition(new_status):
            raise IllegalTransitionError(appointment.status, new_status)
        appointment.status = new_status

    if 'notes' in data:
        appointment.notes = data['notes']
    if 'doctor_notes' in data:
        appointment.doctor_notes = data['doctor_notes']
    if 'prescription' in data:
        appointment.prescription = data['prescription']
    if 'follow_up_date' in data:
        appointment.follow_up_date = _naive_utc(data['follow_up_date'])
    if 'review' in data:
        appointment.review = data['review']
    if 'rating' in data:
        appointment.rating = data['rating']

    if new_status is not None:
        action = Appointment.STATUS_ACTIONS[new_status]
        details = data.get('doctor_notes') or data.get('notes') or f'Status: {new_status}'
    else:
        action = 'Appointment updated'
        details = data.get('doctor_notes') or data.get('notes') or \
            'Updated ' + ', '.join(sorted(k for k in data if k != 'status'))
    appointment.log_activity(action, role, details)

    if 'rating' in data:
        db.session.flush()
        appointment.doctor.refresh_rating()

    _commit()
    logger.info('Appointment %s updated by %s %s (status=%s)', appointment.id, role, user.id, appointment.status)

    if new_status is not None:
        _notify(appointment, user)
    return appointment


def update_appointment_status(appointment_id, user, status, notes=None):
    data = {'status': status}
    if notes is not None:
        data['notes'] = notes
    return update_appointment(appointment_id, user, data)


def list_appointments_for_user(user, filters=None):
    filters = filters or {}
    profile = user.profile
    if profile is None:
        return []

    if user.role == 'doctor':
        query = Appointment.query.filter(Appointment.doctor_id == profile.id)
    else:
        query = Appointment.query.filter(Appointment.patient_id == profile.id)

    if filters.get('status'):
        query = query.filter(Appointment.status == filters['status'])
    if filters.get('appointment_type'):
        query = query.filter(Appointment.appointment_type == filters['appointment_type'])
    if filters.get('start_date'):
        query = query.filter(Appointment.date >= _naive_utc(filters['start_date']))
    if filters.get('end_date'):
        query = query.filter(Appointment.date <= _naive_utc(filters['end_date']))

    return query.order_by(
        Appointment.date.desc(),
        Appointment.created_at.desc(),
        Appointment.id.desc()
    ).all()


def delete_appointment(appointment_id, user):
    appointment, role = _load_for_participant(appointment_id, user)
    # Detach rows that only reference the appointment
    Message.query.filter_by(appointment_id=appointment.id).update({'appointment_id': None})
    Notification.query.filter_by(appointment_id=appointment.id).update({'appointment_id': None})
    doctor = appointment.doctor
    was_rated = appointment.rating is not None
    db.session.delete(appointment)
    if was_rated and doctor is not None:
        db.session.flush()
        doctor.refresh_rating()
    _commit()
    logger.info('Appointment %s deleted by %s %s', appointment_id, role, user.id)


# ---------------------
# Messages
# ---------------------

def send_message(user, data):
    receiver_id = data['receiver_id']
    if receiver_id == user.id:
        raise ValidationError('Cannot send a message to yourself', field='receiver_id')
    if not db.session.get(User, receiver_id):
        raise NotFoundError('Recipient not found', field='receiver_id')
    appointment_id = data.get('appointment_id')
    if appointment_id is not None:
        # Only the two participants may message about an appointment, and only to each other
        appointment, role = _load_for_participant(appointment_id, user)
        counterpart = appointment.doctor if role == 'patient' else appointment.patient
        if counterpart is None or counterpart.user_id != receiver_id:
            raise ForbiddenError('Receiver is not part of this appointment', field='receiver_id')

    message = Message(sender_id=user.id, receiver_id=receiver_id, appointment_id=appointment_id)
    message.content = data['content'].strip()
    db.session.add(message)
    _commit()
    return message


def list_messages(user, other_user_id):
    messages = Message.query.filter(
        or_(
            and_(Message.sender_id == user.id, Message.receiver_id == other_user_id),
            and_(Message.sender_id == other_user_id, Message.receiver_id == user.id)
        )
    ).order_by(Message.created_at.asc(), Message.id.asc()).all()

    unread = [m for m in messages if m.receiver_id == user.id and not m.read]
    if unread:
        for m in unread:
            m.read = True
        _commit()
    return messages


def mark_message_read(user, message_id):
    message = db.session.get(Message, message_id)
    if not message:
        raise NotFoundError('Message not found')
    if message.receiver_id != user.id:
        raise ForbiddenError('Access denied')
    if not message.read:
        message.read = True
        _commit()
    return message


# ---------------------
# Notifications
# ---------------------

def list_notifications(user, include_read=False):
    query = Notification.query.filter_by(user_id=user.id)
    if not include_read:
        query = query.filter_by(is_read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def mark_notification_read(user, notification_id):
    notification = db.session.get(Notification, notification_id)
    if not notification or notification.user_id != user.id:
        raise NotFoundError('Notification not found')
    notification.is_read = True
    _commit()
    return notification


def mark_all_notifications_read(user):
    count = Notification.query.filter_by(user_id=user.id, is_read=False).update({'is_read': True})
    _commit()
    return count
