# render_entry.py
import os
import logging

from app import create_app
from models import db

logger = logging.getLogger(__name__)

app = create_app()

if __name__ == '__main__':
    # Create tables if they don't exist; schema changes go through Flask-Migrate
    with app.app_context():
        db.create_all()
        logger.info("Database tables created/verified")

    port = int(os.getenv('PORT', 10000))
    app.run(host='0.0.0.0', port=port, debug=app.config.get('ENVIRONMENT') == 'development')
