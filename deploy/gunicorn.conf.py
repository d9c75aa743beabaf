"""Gunicorn config for the stockcart API."""

import os


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or str(default)).strip()
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


bind = os.getenv("GUNICORN_BIND", "127.0.0.1:8000")
wsgi_app = "core.wsgi:application"

workers = _env_int("GUNICORN_WORKERS", 3)
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "gthread")
threads = _env_int("GUNICORN_THREADS", 4)

# Stays above LOCK_DEFAULT_TTL_MS.
timeout = _env_int("GUNICORN_TIMEOUT", 45)
graceful_timeout = _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30)
keepalive = _env_int("GUNICORN_KEEPALIVE", 5)

max_requests = _env_int("GUNICORN_MAX_REQUESTS", 2000)
max_requests_jitter = _env_int("GUNICORN_MAX_REQUESTS_JITTER", 200)
preload_app = os.getenv("GUNICORN_PRELOAD_APP", "true").lower() == "true"

loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
accesslog = os.getenv("GUNICORN_ACCESS_LOG", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOG", "-")
capture_output = True


def post_fork(server, worker):
    # Connections opened while preloading must not be shared across workers.
    from django.db import connections

    for conn in connections.all(initialized_only=True):
        conn.close()
    server.log.info("Worker %s ready", worker.pid)
