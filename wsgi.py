"""
WSGI and Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    flask --app wsgi run
"""

from tracker import create_app

app = create_app()
