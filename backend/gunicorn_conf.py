# backend/gunicorn_conf.py

# Gunicorn config for the FlowBot API (gunicorn -c gunicorn_conf.py flowbot.main:app)

import os

# Basic configuration
bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# Without REDIS_URL address locks are per-process; keep a single worker then
if not os.getenv("REDIS_URL"):
    workers = 1

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
# Send access and error logs to stdout and stderr
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
