"""
Counterpart notifications for appointment events.

Called after the triggering change has been committed. Writes an in-app
Notification row and sends an email through Flask-Mail. Any failure here is
logged and swallowed so the committed change stands.
"""

import logging
import threading

from flask import current_app
from flask_mail import Mail, Message as MailMessage
from sqlalchemy.exc import SQLAlchemyError

from models import db, Notification

logger = logging.getLogger(__name__)

mail = Mail()

EVENT_TITLES = {
    'pending': 'New appointment request',
    'accepted': 'Appointment accepted',
    'rejected': 'Appointment declined',
    'cancelled': 'Appointment cancelled',
    'completed': 'Appointment completed',
}


def _send_email(app, recipient, subject, body):
    with app.app_context():
        msg = MailMessage(subject=subject, recipients=[recipient], body=body)
        mail.send(msg)


def _send_email_safely(app, recipient, subject, body):
    try:
        _send_email(app, recipient, subject, body)
    except Exception:
        logger.exception('Notification email to user failed (subject=%r)', subject)


def _dispatch_email(recipient, subject, body):
    app = current_app._get_current_object()
    if not app.config.get('NOTIFY_EMAIL', True) or not recipient:
        return
    if app.config.get('NOTIFY_ASYNC', True):
        t = threading.Thread(
            target=_send_email_safely,
            args=(app, recipient, subject, body),
            daemon=True,
            name='notification_email'
        )
        t.start()
    else:
        _send_email_safely(app, recipient, subject, body)


def _describe(appointment, status):
    when = appointment.date.strftime('%Y-%m-%d %H:%M') if appointment.date else 'an unscheduled time'
    if status == 'pending':
        patient_name = appointment.patient.full_name if appointment.patient else 'A patient'
        return f'{patient_name} requested an appointment for {when}.'
    doctor_name = appointment.doctor.full_name if appointment.doctor else 'your doctor'
    if status == 'cancelled':
        patient_name = appointment.patient.full_name if appointment.patient else 'The patient'
        return f'{patient_name} cancelled the appointment scheduled for {when}.'
    return f'Your appointment with Dr. {doctor_name} on {when} is now {status}.'


def notify_appointment_event(appointment, actor):
    """Notify the participant on the other side of `actor` about the current status."""
    try:
        if actor.role == 'patient':
            recipient = appointment.doctor.user if appointment.doctor else None
        else:
            recipient = appointment.patient.user if appointment.patient else None
        if recipient is None:
            logger.warning('No counterpart to notify for appointment %s', appointment.id)
            return None

        status = appointment.status
        title = EVENT_TITLES.get(status, 'Appointment updated')
        body = _describe(appointment, status)
        notification = Notification(
            user_id=recipient.id,
            appointment_id=appointment.id,
            notification_type=f'appointment_{status}',
            sender_id=actor.id,
            title=title,
            body=body
        )
        db.session.add(notification)
        db.session.commit()
        logger.info('Notified user %s about appointment %s (%s)', recipient.id, appointment.id, status)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Failed to store notification for appointment %s', appointment.id)
        return None

    _dispatch_email(recipient.email, f'MindMate - {title}', body)
    return notification
