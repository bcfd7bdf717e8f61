"""
Appointment lifecycle endpoints.

Patients request appointments; the doctor accepts, rejects or completes them;
the patient may cancel. Every change is recorded in the appointment's
activity log.
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

import services
from api import ok, json_body, role_required
from schemas import (
    AppointmentCreateSchema, AppointmentUpdateSchema, AppointmentStatusSchema,
    AppointmentFilterSchema, load_or_raise
)

appointments_bp = Blueprint('appointments', __name__, url_prefix='/api/appointments')


@appointments_bp.route('', methods=['GET'])
@login_required
def list_appointments():
    """Appointments for the current user, newest first"""
    filters = load_or_raise(AppointmentFilterSchema(), request.args.to_dict())
    appointments = services.list_appointments_for_user(current_user, filters)
    data = [a.to_dict(viewer_role=current_user.role) for a in appointments]
    return ok(data, count=len(data))


@appointments_bp.route('', methods=['POST'])
@role_required('patient')
def create_appointment():
    data = load_or_raise(AppointmentCreateSchema(), json_body())
    appointment = services.create_appointment(current_user, data)
    return ok(appointment.to_dict(), 201, message='Appointment request sent successfully')


@appointments_bp.route('/<int:appointment_id>', methods=['GET'])
@login_required
def get_appointment(appointment_id):
    appointment = services.get_appointment(appointment_id, current_user)
    return ok(appointment.to_dict())


@appointments_bp.route('/<int:appointment_id>', methods=['PATCH'])
@login_required
def update_appointment(appointment_id):
    """Status change and/or notes, prescription, follow-up, rating and review"""
    data = load_or_raise(AppointmentUpdateSchema(), json_body())
    appointment = services.update_appointment(appointment_id, current_user, data)
    return ok(appointment.to_dict(), message='Appointment updated successfully')


@appointments_bp.route('/<int:appointment_id>/status', methods=['PATCH'])
@login_required
def update_appointment_status(appointment_id):
    data = load_or_raise(AppointmentStatusSchema(), json_body())
    appointment = services.update_appointment_status(
        appointment_id, current_user, data['status'], data.get('notes')
    )
    return ok(appointment.to_dict(), message='Appointment updated successfully')


@appointments_bp.route('/<int:appointment_id>', methods=['DELETE'])
@login_required
def delete_appointment(appointment_id):
    services.delete_appointment(appointment_id, current_user)
    return ok(None, message='Appointment deleted successfully')
