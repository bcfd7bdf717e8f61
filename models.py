from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
import os
import hashlib
import logging
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import func

db = SQLAlchemy()

logger = logging.getLogger(__name__)

ROLES = ('patient', 'doctor')
APPOINTMENT_STATUSES = ('pending', 'accepted', 'rejected', 'cancelled', 'completed')
APPOINTMENT_TYPES = ('online', 'in-person')
VERIFICATION_STATUSES = ('unverified', 'pending', 'verified', 'rejected')
PERFORMERS = ('patient', 'doctor', 'system')

_ENCRYPTION_KEY = os.environ.get('ENCRYPTION_KEY')
if not _ENCRYPTION_KEY:
    # WARNING: generating a key here will make existing encrypted data unreadable across restarts.
    logging.warning('ENCRYPTION_KEY not set in environment; generating ephemeral key (NOT for production).')
    _ENCRYPTION_KEY = Fernet.generate_key().decode()

try:
    _FERNET = Fernet(_ENCRYPTION_KEY.encode())
except ValueError as e:
    logging.error(f"Failed to initialize Fernet: {e}")
    _FERNET = None


def _utcnow():
    return datetime.now(timezone.utc)


def _encrypt_text(plaintext: str) -> bytes:
    if plaintext is None or _FERNET is None:
        return None
    return _FERNET.encrypt(plaintext.encode())


def _decrypt_text(token: bytes) -> str:
    if token is None or _FERNET is None:
        return None
    try:
        return _FERNET.decrypt(token).decode()
    except InvalidToken:
        logging.error("Invalid token - encryption key may have changed")
        return "[Encryption Error]"


def _hash_value(value: str) -> str:
    if value is None:
        return None
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    # Encrypted email and deterministic hash for lookups
    encrypted_email = db.Column(db.LargeBinary, nullable=False)
    email_hash = db.Column(db.String(64), index=True, unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # 'patient', 'doctor'
    full_name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow)

    patient_profile = db.relationship('Patient', backref='user', uselist=False)
    doctor_profile = db.relationship('Doctor', backref='user', uselist=False)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def email(self):
        return _decrypt_text(self.encrypted_email) if self.encrypted_email else None

    @email.setter
    def email(self, value):
        if value is None:
            self.encrypted_email = None
            self.email_hash = None
        else:
            self.encrypted_email = _encrypt_text(value.strip().lower())
            self.email_hash = _hash_value(value)

    @property
    def profile(self):
        """The role-specific profile row, or None if it was never created."""
        return self.doctor_profile if self.role == 'doctor' else self.patient_profile

    def to_dict(self, include_profile=False):
        data = {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'full_name': self.full_name,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }
        if include_profile:
            profile = self.profile
            data['profile'] = profile.to_dict() if profile else None
        return data


class Patient(db.Model):
    __tablename__ = 'patients'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    full_name = db.Column(db.String(120), nullable=False)
    age = db.Column(db.Integer, nullable=False)
    gender = db.Column(db.String(20), nullable=False)
    contact_number = db.Column(db.String(40), nullable=False)
    condition = db.Column(db.String(120))  # anxiety, depression, etc.
    severity = db.Column(db.String(20))    # mild, moderate, severe
    encrypted_medical_history = db.Column(db.LargeBinary)

    appointments = db.relationship('Appointment', backref='patient', lazy=True)

    @property
    def medical_history(self):
        return _decrypt_text(self.encrypted_medical_history) if self.encrypted_medical_history else None

    @medical_history.setter
    def medical_history(self, value):
        self.encrypted_medical_history = _encrypt_text(value) if value is not None else None

    def summary(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'age': self.age,
            'gender': self.gender,
            'contact_number': self.contact_number,
        }

    def to_dict(self):
        data = self.summary()
        data.update({
            'user_id': self.user_id,
            'condition': self.condition,
            'severity': self.severity,
            'medical_history': self.medical_history,
        })
        return data


class Doctor(db.Model):
    __tablename__ = 'doctors'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    full_name = db.Column(db.String(120), nullable=False)
    specialization = db.Column(db.String(120), nullable=False, index=True)
    license_number = db.Column(db.String(64), unique=True, nullable=False)
    bio = db.Column(db.Text)
    experience = db.Column(db.Integer, default=0, nullable=False)  # years
    consultation_fee = db.Column(db.Float, nullable=False)
    verification_status = db.Column(db.String(20), default='unverified', nullable=False, index=True)
    availability = db.Column(db.JSON, default=list)  # [{day, start_time, end_time, is_available}]
    rating = db.Column(db.Float, default=0, nullable=False)
    education = db.Column(db.JSON)  # [{degree, university, year}]
    languages = db.Column(db.JSON)
    hospital_affiliation = db.Column(db.String(255))
    consultation_types = db.Column(db.JSON)

    appointments = db.relationship('Appointment', backref='doctor', lazy=True)

    def refresh_rating(self):
        """Recompute rating as the mean of rated appointments with this doctor."""
        avg = db.session.query(func.avg(Appointment.rating)).filter(
            Appointment.doctor_id == self.id,
            Appointment.rating.isnot(None)
        ).scalar()
        self.rating = round(float(avg), 2) if avg is not None else 0

    def summary(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'specialization': self.specialization,
            'consultation_fee': self.consultation_fee,
            'verification_status': self.verification_status,
        }

    def to_dict(self):
        data = self.summary()
        data.update({
            'user_id': self.user_id,
            'license_number': self.license_number,
            'bio': self.bio,
            'experience': self.experience,
            'availability': self.availability or [],
            'rating': self.rating,
            'education': self.education or [],
            'languages': self.languages or [],
            'hospital_affiliation': self.hospital_affiliation,
            'consultation_types': self.consultation_types or [],
        })
        return data


class Appointment(db.Model):
    __tablename__ = 'appointments'
    __table_args__ = (
        db.Index('ix_appointments_doctor_status', 'doctor_id', 'status'),
        db.Index('ix_appointments_patient_status', 'patient_id', 'status'),
    )

    # Allowed status transitions; terminal states map to an empty set
    ALLOWED_TRANSITIONS = {
        'pending': {'accepted', 'rejected', 'cancelled'},
        'accepted': {'completed', 'cancelled'},
        'rejected': set(),
        'cancelled': set(),
        'completed': set(),
    }

    # Which participant may move an appointment into each status
    STATUS_ACTORS = {
        'accepted': 'doctor',
        'rejected': 'doctor',
        'completed': 'doctor',
        'cancelled': 'patient',
    }

    STATUS_ACTIONS = {
        'pending': 'Appointment requested',
        'accepted': 'Appointment accepted by doctor',
        'rejected': 'Appointment rejected by doctor',
        'cancelled': 'Appointment cancelled by patient',
        'completed': 'Appointment completed',
    }

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('patients.id'), nullable=False)
    doctor_id = db.Column(db.Integer, db.ForeignKey('doctors.id'), nullable=False)
    date = db.Column(db.DateTime, nullable=False, index=True)
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)
    encrypted_symptoms = db.Column(db.LargeBinary, nullable=False)
    encrypted_health_condition = db.Column(db.LargeBinary)
    encrypted_notes = db.Column(db.LargeBinary)
    encrypted_doctor_notes = db.Column(db.LargeBinary)
    appointment_type = db.Column('type', db.String(20), default='online', nullable=False)
    duration = db.Column(db.Integer, default=30, nullable=False)  # minutes
    follow_up_date = db.Column(db.DateTime)
    encrypted_prescription = db.Column(db.LargeBinary)
    rating = db.Column(db.Integer)  # 1-5 stars
    encrypted_review = db.Column(db.LargeBinary)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    activity_log = db.relationship(
        'AppointmentActivity',
        backref='appointment',
        order_by='AppointmentActivity.id',
        cascade='all, delete-orphan',
        lazy=True
    )

    @property
    def symptoms(self):
        return _decrypt_text(self.encrypted_symptoms) if self.encrypted_symptoms else None

    @symptoms.setter
    def symptoms(self, value):
        self.encrypted_symptoms = _encrypt_text(value) if value is not None else None

    @property
    def health_condition(self):
        return _decrypt_text(self.encrypted_health_condition) if self.encrypted_health_condition else None

    @health_condition.setter
    def health_condition(self, value):
        self.encrypted_health_condition = _encrypt_text(value) if value is not None else None

    @property
    def notes(self):
        return _decrypt_text(self.encrypted_notes) if self.encrypted_notes else None

    @notes.setter
    def notes(self, value):
        self.encrypted_notes = _encrypt_text(value) if value is not None else None

    @property
    def doctor_notes(self):
        return _decrypt_text(self.encrypted_doctor_notes) if self.encrypted_doctor_notes else None

    @doctor_notes.setter
    def doctor_notes(self, value):
        self.encrypted_doctor_notes = _encrypt_text(value) if value is not None else None

    @property
    def prescription(self):
        return _decrypt_text(self.encrypted_prescription) if self.encrypted_prescription else None

    @prescription.setter
    def prescription(self, value):
        self.encrypted_prescription = _encrypt_text(value) if value is not None else None

    @property
    def review(self):
        return _decrypt_text(self.encrypted_review) if self.encrypted_review else None

    @review.setter
    def review(self, value):
        self.encrypted_review = _encrypt_text(value) if value is not None else None

    def can_transition(self, new_status):
        return new_status in self.ALLOWED_TRANSITIONS.get(self.status, set())

    def log_activity(self, action, performed_by, details=None):
        entry = AppointmentActivity(action=action, performed_by=performed_by, details=details)
        self.activity_log.append(entry)
        return entry

    def participant_role(self, user):
        """Return 'patient' or 'doctor' if `user` is on this appointment, else None."""
        profile = user.profile if user is not None else None
        if profile is None:
            return None
        if user.role == 'patient' and profile.id == self.patient_id:
            return 'patient'
        if user.role == 'doctor' and profile.id == self.doctor_id:
            return 'doctor'
        return None

    def to_dict(self, viewer_role=None, include_activity=True):
        data = {
            'id': self.id,
            'patient_id': self.patient_id,
            'doctor_id': self.doctor_id,
            'date': _iso(self.date),
            'status': self.status,
            'symptoms': self.symptoms,
            'health_condition': self.health_condition,
            'notes': self.notes,
            'doctor_notes': self.doctor_notes,
            'type': self.appointment_type,
            'duration': self.duration,
            'follow_up_date': _iso(self.follow_up_date),
            'prescription': self.prescription,
            'rating': self.rating,
            'review': self.review,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        # Counterpart enrichment: doctors see the patient, patients see the doctor
        if viewer_role != 'patient':
            data['patient'] = self.patient.summary() if self.patient else None
        if viewer_role != 'doctor':
            data['doctor'] = self.doctor.summary() if self.doctor else None
        if include_activity:
            data['activity_log'] = [entry.to_dict() for entry in self.activity_log]
        return data


class AppointmentActivity(db.Model):
    """Append-only history of actions taken on an appointment."""
    __tablename__ = 'appointment_activity'

    id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey('appointments.id'), nullable=False, index=True)
    action = db.Column(db.String(120), nullable=False)
    performed_by = db.Column(db.String(20), nullable=False)  # patient, doctor, system
    details = db.Column(db.Text)
    timestamp = db.Column(db.DateTime, default=_utcnow)

    def to_dict(self):
        return {
            'action': self.action,
            'performed_by': self.performed_by,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }


class Message(db.Model):
    """Messages between two users (encrypted at rest for privacy)"""
    __tablename__ = 'messages'

    id = db.Column(db.Integer, primary_key=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    receiver_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    encrypted_content = db.Column(db.LargeBinary, nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey('appointments.id', ondelete='SET NULL'), nullable=True)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow, index=True)

    sender = db.relationship('User', foreign_keys=[sender_id])
    receiver = db.relationship('User', foreign_keys=[receiver_id])

    @property
    def content(self):
        return _decrypt_text(self.encrypted_content) if self.encrypted_content else None

    @content.setter
    def content(self, value):
        self.encrypted_content = _encrypt_text(value) if value is not None else None

    def to_dict(self):
        return {
            'id': self.id,
            'sender_id': self.sender_id,
            'receiver_id': self.receiver_id,
            'content': self.content,
            'appointment_id': self.appointment_id,
            'read': self.read,
            'created_at': _iso(self.created_at),
        }


class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey('appointments.id', ondelete='SET NULL'), nullable=True)
    notification_type = db.Column(db.String(50), nullable=False)  # appointment_requested, appointment_accepted, ...
    sender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    title = db.Column(db.String(255))
    body = db.Column(db.Text)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow)

    user = db.relationship('User', foreign_keys=[user_id], backref=db.backref('notifications', lazy=True))
    sender = db.relationship('User', foreign_keys=[sender_id])

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.notification_type,
            'title': self.title,
            'body': self.body,
            'sender_id': self.sender_id,
            'sender_name': self.sender.full_name if self.sender else None,
            'appointment_id': self.appointment_id,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    timestamp = db.Column(db.DateTime, default=_utcnow)
