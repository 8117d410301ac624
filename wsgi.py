"""
WSGI / Flask-Migrate entry point.

Usage:
    flask db upgrade
    flask seed-phase-catalog
    flask remind-stalled-projects --days 7
"""

from portal import create_app

app = create_app()
