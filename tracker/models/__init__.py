"""
Project Tracker
SQLAlchemy instance shared by every model module.

Usage:
    from tracker.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
