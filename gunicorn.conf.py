"""Gunicorn settings for the billing API.

Usage:
    gunicorn -c gunicorn.conf.py billing_engine.main:app

The sweep runs in the Celery worker, so API workers only serve checkout,
confirmation and provider callbacks.
"""
from __future__ import annotations

import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8001")

workers = int(os.getenv("GUNICORN_WORKERS", str(multiprocessing.cpu_count() * 2 + 1)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# A checkout start waits on the gateway (PROVIDER_START_TIMEOUT_SECONDS);
# leave headroom above it before the arbiter kills the worker.
_provider_timeout = float(os.getenv("PROVIDER_START_TIMEOUT_SECONDS", "10"))
timeout = int(os.getenv("GUNICORN_TIMEOUT", str(int(_provider_timeout * 3) + 30)))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "1000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "50"))

preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"

# User identity arrives in x-user-id from the gateway in front of us.
forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "127.0.0.1")

accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)s rid=%({x-request-id}o)s'

proc_name = "billing_engine"
