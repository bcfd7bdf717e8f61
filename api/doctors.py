"""
Doctor directory endpoints.
"""

from flask import Blueprint, request
from flask_login import current_user

import services
from api import ok, json_body, role_required
from schemas import DoctorFilterSchema, DoctorProfileSchema, load_or_raise

doctors_bp = Blueprint('doctors', __name__, url_prefix='/api/doctors')


@doctors_bp.route('', methods=['GET'])
def list_doctors():
    """List doctors, optionally filtered by specialization, experience, fee and verification"""
    filters = load_or_raise(DoctorFilterSchema(), request.args.to_dict())
    doctors = services.list_doctors(filters)
    return ok([d.to_dict() for d in doctors], count=len(doctors))


@doctors_bp.route('/<int:doctor_id>', methods=['GET'])
def get_doctor(doctor_id):
    return ok(services.get_doctor(doctor_id).to_dict())


@doctors_bp.route('', methods=['POST'])
@role_required('doctor')
def create_doctor_profile():
    """Create the profile for a doctor account that does not have one yet"""
    data = load_or_raise(DoctorProfileSchema(), json_body())
    doctor = services.create_doctor_profile(current_user, data)
    return ok(doctor.to_dict(), 201, message='Doctor profile created')


@doctors_bp.route('/me', methods=['PATCH'])
@role_required('doctor')
def update_my_profile():
    payload = json_body()
    data = load_or_raise(DoctorProfileSchema(), payload, partial=True)
    if payload and 'license_number' in payload:
        data['license_number'] = payload['license_number']
    doctor = services.update_doctor_profile(current_user, data)
    return ok(doctor.to_dict(), message='Profile updated')
