"""
Authentication endpoints: register, login, logout, current user.
"""

from flask import Blueprint, current_app, request
from flask_login import login_user, logout_user, login_required, current_user

import services
from api import ok, json_body
from schemas import RegisterSchema, LoginSchema, load_or_raise

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@auth_bp.route('/register', methods=['POST'])
def register():
    """Create an account and its patient/doctor profile, then log it in"""
    data = load_or_raise(RegisterSchema(), json_body())
    user = services.register_user(
        data,
        min_password_length=current_app.config.get('MIN_PASSWORD_LENGTH', 8),
        ip_address=request.remote_addr
    )
    login_user(user)
    return ok(user.to_dict(include_profile=True), 201, message='Registration successful')


@auth_bp.route('/login', methods=['POST'])
def login():
    data = load_or_raise(LoginSchema(), json_body())
    user = services.authenticate(data['username'], data['password'])
    login_user(user, remember=data['remember'])
    services.record_audit(user, 'login', f'User {user.username} logged in', request.remote_addr)
    return ok(user.to_dict(include_profile=True), message='Login successful')


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    services.record_audit(current_user, 'logout', f'User {current_user.username} logged out', request.remote_addr)
    logout_user()
    return ok(None, message='Logged out')


@auth_bp.route('/me', methods=['GET'])
@login_required
def me():
    return ok(current_user.to_dict(include_profile=True))
