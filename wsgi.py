"""
WSGI entry point and ``flask`` CLI target.

    gunicorn wsgi:app
    FLASK_APP=wsgi flask db upgrade
    FLASK_APP=wsgi flask run-due-jobs     # from cron
    FLASK_APP=wsgi flask sla-sweep --scope order_item

APP_ENV selects the config class (development | testing | production).
"""

from app import create_app

app = create_app()
