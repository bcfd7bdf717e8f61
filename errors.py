"""
API error taxonomy and the JSON error envelope.

Service functions raise these; the handlers registered by
``register_error_handlers`` turn them into ``{"success": false, ...}`` bodies.
"""

import logging

from flask import current_app, jsonify, g
from werkzeug.exceptions import HTTPException

from models import db

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None, field=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.field = field


class ValidationError(ApiError):
    status_code = 400
    default_message = 'Invalid request'


class AuthError(ApiError):
    status_code = 401
    default_message = 'Unauthorized'


class ForbiddenError(ApiError):
    status_code = 403
    default_message = 'Access denied'


class NotFoundError(ApiError):
    status_code = 404
    default_message = 'Not found'


class IllegalTransitionError(ApiError):
    """Raised when a status change is not allowed from the current status."""
    status_code = 409
    default_message = 'Status transition not allowed'

    def __init__(self, current_status, new_status):
        super().__init__(
            f'Cannot change appointment status from {current_status} to {new_status}',
            field='status'
        )
        self.current_status = current_status
        self.new_status = new_status


class InternalError(ApiError):
    status_code = 500


def json_error(message, http_status=400, field=None, details=None):
    body = {'success': False, 'message': message}
    if field:
        body['field'] = field
    if details:
        body['details'] = details
    request_id = getattr(g, 'request_id', None)
    if request_id:
        body['request_id'] = request_id
    return jsonify(body), http_status


def _handle_api_error(err):
    if err.status_code >= 500:
        db.session.rollback()
        logger.error('API error: %s', err.message)
    return json_error(err.message, err.status_code, field=err.field)


def _handle_http_exception(err):
    messages = {
        404: 'Route not found',
        405: 'Method not allowed',
        413: 'Request body too large',
    }
    return json_error(messages.get(err.code, err.description or err.name), err.code or 500)


def _handle_unexpected(err):
    db.session.rollback()
    logger.exception('Unhandled error: %s', err)
    details = None
    if current_app.config.get('ENVIRONMENT') == 'development':
        details = {'error': str(err)}
    return json_error('Internal server error', 500, details=details)


def register_error_handlers(app):
    app.register_error_handler(ApiError, _handle_api_error)
    app.register_error_handler(HTTPException, _handle_http_exception)
    app.register_error_handler(Exception, _handle_unexpected)
