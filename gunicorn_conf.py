import os

wsgi_app = "receiptbridge.main:app"
chdir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "backend")

# per-tenant refresh locks live in process memory
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
bind = os.getenv("BIND", "0.0.0.0:8000")
accesslog = os.getenv("GUNICORN_ACCESS_LOG", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOG", "-")
loglevel = "info"
