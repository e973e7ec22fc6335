"""
Staff Appraisal Engine — ORM models.

The shared ``db`` handle is created here and bound to the Flask app in
``appraisal.create_app``. Model modules import it from this package:

    from appraisal.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
