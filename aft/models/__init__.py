"""
AFT Request Tracker
Model package — the shared Flask-SQLAlchemy handle.

Every model module imports ``db`` from here so the application factory can
bind a single extension instance:

    from aft.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
