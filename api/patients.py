from flask import Blueprint
from flask_login import login_required, current_user

import services
from api import ok, json_body, role_required
from schemas import PatientProfileSchema, load_or_raise

patients_bp = Blueprint('patients', __name__, url_prefix='/api/patients')


@patients_bp.route('/<int:patient_id>', methods=['GET'])
@login_required
def get_patient(patient_id):
    """Patient profile, visible to its owner and to doctors who share an appointment"""
    patient = services.get_patient(patient_id, current_user)
    return ok(patient.to_dict())


@patients_bp.route('/me', methods=['PATCH'])
@role_required('patient')
def update_my_profile():
    data = load_or_raise(PatientProfileSchema(), json_body(), partial=True)
    patient = services.update_patient_profile(current_user, data)
    return ok(patient.to_dict(), message='Profile updated')
