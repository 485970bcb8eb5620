# Gunicorn configuration for the natal chart engine
# Rate limiter and chart cache state is shared through the record store:
# run more than one worker only with the Redis store backend.

import os

wsgi_app = "natal_engine.main:app"
chdir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "server")
raw_env = [f"NATAL_CONFIG={os.path.abspath(os.getenv('NATAL_CONFIG', 'config.yaml'))}"]

# One worker unless the store is shared
workers = int(os.getenv("WORKERS", 2 if os.getenv("REDIS_URL") else 1))

# Use Uvicorn workers (async support)
worker_class = "uvicorn.workers.UvicornWorker"

# Binding
bind = f"0.0.0.0:{os.getenv('PORT', 8000)}"

# Chart service calls retry with backoff; leave room for them
timeout = 60
keepalive = 2
max_requests = 1000
max_requests_jitter = 100

preload_app = False
worker_tmp_dir = "/dev/shm"

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Security
limit_request_line = 2048
limit_request_fields = 32
limit_request_field_size = 4096


def on_exit(server):
    """Called when master exits"""
    server.log.info("Master process exiting")


# Environment-specific overrides
if os.getenv("ENVIRONMENT") == "production":
    workers = min(workers, 8)
    capture_output = True
    enable_stdio_inheritance = True
