# Overview: Flask extension instances for the database session and Alembic migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()

# compare_type lets autogenerate notice column type changes (e.g. qty widths)
migrate = Migrate(compare_type=True)
