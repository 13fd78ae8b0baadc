"""
Decision & Approval Workflow Engine — WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi run-job reminder_sweep
"""

from app import create_app

app = create_app()
