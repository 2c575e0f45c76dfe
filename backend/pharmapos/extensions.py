# Overview: Flask extension instances for database and migrations, plus the in-process cart registry.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .cart import CartRegistry

db = SQLAlchemy()
migrate = Migrate()
carts = CartRegistry()
