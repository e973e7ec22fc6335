"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi release-all
    gunicorn wsgi:app
"""

from appraisal import create_app

app = create_app()
