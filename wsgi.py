"""
WSGI entry point for the approval engine.

Usage:
    gunicorn wsgi:app
    flask --app wsgi dispatch-notifications
    flask --app wsgi db migrate -m "description"
"""

from app import create_app

app = create_app()
