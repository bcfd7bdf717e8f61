from functools import wraps

from flask import jsonify, request
from flask_login import current_user

from errors import ForbiddenError, AuthError


def ok(data=None, status=200, message=None, **extra):
    body = {'success': True, 'data': data}
    if message:
        body['message'] = message
    body.update(extra)
    return jsonify(body), status


def json_body():
    """Parsed JSON body, or None when the body is missing or not JSON."""
    return request.get_json(silent=True)


def role_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                raise AuthError('Authentication required')
            if current_user.role not in roles:
                raise ForbiddenError('Forbidden for this role')
            return view(*args, **kwargs)
        return wrapped
    return decorator
