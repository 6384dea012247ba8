"""
Municipal Operations Back-Office
Shared SQLAlchemy handle.

Every model module imports ``db`` from here so the extension is bound once
by the application factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
