# gunicorn_config.py
# Run with: gunicorn -c gunicorn_config.py render_entry:app
import os
import multiprocessing

# Worker configuration
workers = int(os.getenv('WEB_CONCURRENCY', multiprocessing.cpu_count() * 2 + 1))
worker_class = 'gthread'
threads = int(os.getenv('GUNICORN_THREADS', 4))
timeout = 30
keepalive = 5

# Socket configuration
bind = f"0.0.0.0:{os.getenv('PORT', '10000')}"

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'info').lower()

# Process naming
proc_name = 'mindmate_api'

max_requests = 1000
max_requests_jitter = 50
