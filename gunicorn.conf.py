"""Gunicorn production configuration for the approval routing API.

Run from backend/: gunicorn -c ../gunicorn.conf.py
Each worker process has its own instance lock manager; transitions across
workers are serialized by the row lock the engine takes.
"""
import multiprocessing
import os

wsgi_app = "approval_routing.main:app"
bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
# A transition may wait LOCK_TIMEOUT_SECONDS on each retry.
timeout = 60
graceful_timeout = 30
keepalive = 5
max_requests = 1000
max_requests_jitter = 100
preload_app = True
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
