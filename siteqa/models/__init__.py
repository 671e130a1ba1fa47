"""
Site Quality Workflow Engine
SQLAlchemy database instance shared across all models.

Usage:
    from siteqa.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
