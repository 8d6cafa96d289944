"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi scan-alerts
    flask --app wsgi db migrate -m "description"
"""

from crm import create_app

app = create_app()
