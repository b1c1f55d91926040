"""
Maintenance Permit Core
SQLAlchemy models package.

The shared ``db`` instance lives here so every model module and service
imports it from one place:

    from cmms.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
