"""
Trade Ops Core
Model package — shared SQLAlchemy handle.

Usage:
    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
