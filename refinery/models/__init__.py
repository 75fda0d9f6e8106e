"""
Refinery Batch Tracker — persistence layer.

``db`` is the single Flask-SQLAlchemy handle shared by every model module.
Model modules register their tables on import; ``create_app`` imports them
all before ``db.create_all()``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
