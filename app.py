import os
import logging
from flask import Flask, jsonify
from config import Config
from extensions import db, login_manager, init_extensions
from models import User


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    setup_logging(app)

    # ----------------------------------------------------------------------------------------------------------------------------------
    # Local SQLite fallback lives in instance/
    # ----------------------------------------------------------------------------------------------------------------------------------
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(os.path.join(os.path.abspath(os.path.dirname(__file__)), "instance"), exist_ok=True)

    # --------------------------------------------------------------------------------------------------------------------------
    # Initialize extensions
    # ----------------------------------------------------------------------------------------------------------------------------
    init_extensions(app)

    register_blueprints(app)

    # ------------------------------------------------------------------------------------------------------------------------
    # Flask-Login
    # ------------------------------------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Unauthorized"}), 401

    @app.route("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    return app


def setup_logging(app):
    """File log under LOG_DIR, plus console output in debug."""
    logs_dir = app.config.get("LOG_DIR", "logs")
    os.makedirs(logs_dir, exist_ok=True)

    file_handler = logging.FileHandler(os.path.join(logs_dir, 'app.log'), mode='a', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    file_handler.setLevel(logging.INFO)

    app.logger.handlers.clear()
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.INFO)
    app.logger.propagate = False

    if app.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(console_handler)


def register_blueprints(app):
    from blueprints.admin import admin_bp
    from blueprints.vouchers import bp as vouchers_bp
    from blueprints.payment_webhooks import bp as webhooks_bp

    app.register_blueprint(admin_bp)
    app.register_blueprint(vouchers_bp)
    app.register_blueprint(webhooks_bp)


# ----------------------
# Create app instance
# ----------------------
app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)
