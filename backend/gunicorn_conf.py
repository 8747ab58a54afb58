# backend/gunicorn_conf.py

# Gunicorn config for the cart recovery API:
#   gunicorn -c gunicorn_conf.py
# The scheduler runs as its own process (python scheduler.py), never inside
# the web workers, so each drain happens once per interval.

import os

wsgi_app = "mya_recovery.main:app"

bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 120

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = "info"
