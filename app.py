import os
import logging

from flask import Flask, request
from flask_login import LoginManager
from flask_migrate import Migrate

from config import Config, DevelopmentConfig
from errors import register_error_handlers, json_error
from models import db, User
from notifications import mail

migrate = Migrate()
login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.unauthorized_handler
def unauthorized():
    return json_error('Authentication required', 401)


def configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level,
            format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
        )
    logging.getLogger().setLevel(level)
    app.logger.setLevel(level)


def set_security_headers(response):
    # Prevent clickjacking
    response.headers.setdefault('X-Frame-Options', 'DENY')
    # Prevent MIME type sniffing
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
    if request.is_secure:
        response.headers.setdefault('Strict-Transport-Security', 'max-age=604800; includeSubDomains')
    # API responses carry PHI; keep them out of shared caches
    if request.path.startswith('/api/'):
        response.headers.setdefault('Cache-Control', 'no-store')
    return response


def create_app(config_object=None):
    """Build the Flask application; the DB engine and pool live and die with it."""
    app = Flask(__name__)
    if config_object is None:
        env = os.getenv('ENVIRONMENT', '').lower()
        config_object = DevelopmentConfig if env == 'development' else Config
    app.config.from_object(config_object)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)
    login_manager.init_app(app)

    from api.auth import auth_bp
    from api.doctors import doctors_bp
    from api.patients import patients_bp
    from api.appointments import appointments_bp
    from api.communication import communication_bp
    from api.notifications import notifications_bp
    from api.health import health_bp

    for bp in (auth_bp, doctors_bp, patients_bp, appointments_bp,
               communication_bp, notifications_bp, health_bp):
        app.register_blueprint(bp)

    register_error_handlers(app)
    app.after_request(set_security_headers)

    app.logger.info('MindMate API initialised (environment=%s)', app.config.get('ENVIRONMENT'))
    return app
