"""
Roster Governance Engine - SQLAlchemy models.

Every model module imports the shared extension from here:
    from roster.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
