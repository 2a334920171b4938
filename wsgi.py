from everly import create_app

app = create_app()

# gunicorn: gunicorn -w 2 wsgi:app
# Set IS_NUDGE_SCHEDULER=1 on exactly one instance if NUDGE_WORKER_INTERVAL_SECONDS is used.
