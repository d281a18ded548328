"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db init        # once, creates migrations/
    flask --app wsgi db migrate -m "..."
    flask --app wsgi db upgrade
    flask --app wsgi seed-users
"""

from aft import create_app

app = create_app()
