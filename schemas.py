"""
Request schemas.

Every JSON body and query string is loaded through one of these marshmallow
schemas before it reaches a service function.
"""

from marshmallow import Schema, fields, validate, EXCLUDE
from marshmallow import ValidationError as SchemaValidationError

from errors import ValidationError
from models import ROLES, APPOINTMENT_STATUSES, APPOINTMENT_TYPES, VERIFICATION_STATUSES


def _not_blank(value):
    if value is None or not str(value).strip():
        raise SchemaValidationError('Field may not be blank.')


class BaseSchema(Schema):
    class Meta:
        unknown = EXCLUDE


class RegisterSchema(BaseSchema):
    username = fields.String(required=True, validate=[_not_blank, validate.Length(max=80)])
    email = fields.Email(required=True)
    password = fields.String(required=True, load_only=True, validate=_not_blank)
    full_name = fields.String(required=True, validate=[_not_blank, validate.Length(max=120)])
    role = fields.String(required=True, validate=validate.OneOf(ROLES))
    profile = fields.Dict(load_default=dict)


class LoginSchema(BaseSchema):
    # Accepts either the username or the email address
    username = fields.String(required=True, validate=_not_blank)
    password = fields.String(required=True, load_only=True, validate=_not_blank)
    remember = fields.Boolean(load_default=False)


class PatientProfileSchema(BaseSchema):
    full_name = fields.String(validate=validate.Length(max=120))
    age = fields.Integer(required=True, validate=validate.Range(min=0, max=150))
    gender = fields.String(required=True, validate=_not_blank)
    contact_number = fields.String(required=True, validate=[_not_blank, validate.Length(max=40)])
    condition = fields.String(allow_none=True)
    severity = fields.String(allow_none=True, validate=validate.OneOf(['mild', 'moderate', 'severe']))
    medical_history = fields.String(allow_none=True)


class AvailabilitySlotSchema(BaseSchema):
    day = fields.String(required=True, validate=_not_blank)
    start_time = fields.String(required=True, validate=validate.Regexp(r'^\d{2}:\d{2}$'))
    end_time = fields.String(required=True, validate=validate.Regexp(r'^\d{2}:\d{2}$'))
    is_available = fields.Boolean(load_default=True)


class EducationSchema(BaseSchema):
    degree = fields.String(required=True)
    university = fields.String(allow_none=True)
    year = fields.Integer(allow_none=True)


class DoctorProfileSchema(BaseSchema):
    full_name = fields.String(validate=validate.Length(max=120))
    specialization = fields.String(required=True, validate=_not_blank)
    license_number = fields.String(required=True, validate=[_not_blank, validate.Length(max=64)])
    bio = fields.String(allow_none=True)
    experience = fields.Integer(load_default=0, validate=validate.Range(min=0, max=80))
    consultation_fee = fields.Float(required=True, validate=validate.Range(min=0))
    availability = fields.List(fields.Nested(AvailabilitySlotSchema), load_default=list)
    education = fields.List(fields.Nested(EducationSchema), allow_none=True)
    languages = fields.List(fields.String(), allow_none=True)
    hospital_affiliation = fields.String(allow_none=True)
    consultation_types = fields.List(fields.String(), allow_none=True)


class DoctorFilterSchema(BaseSchema):
    specialization = fields.String()
    min_experience = fields.Integer(validate=validate.Range(min=0))
    max_fee = fields.Float(validate=validate.Range(min=0))
    verification_status = fields.String(validate=validate.OneOf(VERIFICATION_STATUSES))


class AppointmentCreateSchema(BaseSchema):
    doctor_id = fields.Integer(required=True)
    date = fields.DateTime(required=True)
    symptoms = fields.String(required=True, validate=_not_blank)
    health_condition = fields.String(allow_none=True)
    appointment_type = fields.String(data_key='type', load_default='online',
                                     validate=validate.OneOf(APPOINTMENT_TYPES))
    duration = fields.Integer(load_default=30, validate=validate.Range(min=5, max=480))


class AppointmentUpdateSchema(BaseSchema):
    status = fields.String(validate=validate.OneOf(APPOINTMENT_STATUSES))
    notes = fields.String(allow_none=True)
    doctor_notes = fields.String(allow_none=True)
    prescription = fields.String(allow_none=True)
    follow_up_date = fields.DateTime(allow_none=True)
    rating = fields.Integer(validate=validate.Range(min=1, max=5))
    review = fields.String(allow_none=True)


class AppointmentStatusSchema(BaseSchema):
    status = fields.String(required=True, validate=validate.OneOf(APPOINTMENT_STATUSES))
    notes = fields.String(allow_none=True)


class AppointmentFilterSchema(BaseSchema):
    status = fields.String(validate=validate.OneOf(APPOINTMENT_STATUSES))
    appointment_type = fields.String(data_key='type', validate=validate.OneOf(APPOINTMENT_TYPES))
    start_date = fields.DateTime()
    end_date = fields.DateTime()


class MessageCreateSchema(BaseSchema):
    receiver_id = fields.Integer(required=True)
    content = fields.String(required=True, validate=[_not_blank, validate.Length(max=5000)])
    appointment_id = fields.Integer(allow_none=True)


class MessageQuerySchema(BaseSchema):
    other_user_id = fields.Integer(required=True)


def _first_error(messages):
    """Return (field, message) for the first entry of a marshmallow error dict."""
    field_path = []
    current = messages
    while isinstance(current, dict) and current:
        key = next(iter(current))
        field_path.append(str(key))
        current = current[key]
    if isinstance(current, list) and current:
        current = current[0]
    return '.'.join(field_path) or None, str(current)


def load_or_raise(schema, payload, partial=False, prefix=None):
    if payload is None:
        raise ValidationError('Request body must be valid JSON')
    try:
        return schema.load(payload, partial=partial)
    except SchemaValidationError as err:
        field, message = _first_error(err.messages)
        if field == '_schema':
            field = prefix
        elif field and prefix:
            field = f'{prefix}.{field}'
        if field:
            message = f'{field}: {message}'
        raise ValidationError(message, field=field)
