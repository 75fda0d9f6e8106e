"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-templates
    flask --app wsgi seed-flow --pipeline gold
    gunicorn wsgi:app
"""

from refinery import create_app

app = create_app()
