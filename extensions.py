#=======================================================================================================
# Extensions shared by the app factory, models and service modules
#=======================================================================================================
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_migrate import Migrate


db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()


def init_extensions(app):
    """Bind db, Flask-Migrate and Flask-Login to `app`. API-only: no login view."""
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    return app
