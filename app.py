# app.py — MediRDV (API de prise de rendez-vous médicaux)
from __future__ import annotations

import os
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import db, login_manager
from errors import ApiError

# -------------------------------------------------------------------
# Environnement
# -------------------------------------------------------------------
load_dotenv()


# -------------------------------------------------------------------
# DB / SQLAlchemy + psycopg3
# -------------------------------------------------------------------
def _normalize_pg_uri(uri: str) -> str:
    """Normalise une URI Postgres pour SQLAlchemy + psycopg3 et ajoute sslmode=require si manquant."""
    if not uri:
        return uri
    # Heroku/Render fournissent parfois 'postgres://'
    if uri.startswith("postgres://"):
        uri = "postgresql://" + uri[len("postgres://"):]
    if uri.startswith("postgresql+psycopg2://"):
        uri = "postgresql+psycopg://" + uri[len("postgresql+psycopg2://"):]
    elif uri.startswith("postgresql://"):
        uri = "postgresql+psycopg://" + uri[len("postgresql://"):]
    parsed = urlparse(uri)
    q = parse_qs(parsed.query)
    if parsed.scheme.startswith("postgresql+psycopg") and "sslmode" not in q:
        q["sslmode"] = ["require"]
        uri = urlunparse(parsed._replace(query=urlencode({k: v[0] for k, v in q.items()})))
    return uri


def _database_url(config: dict) -> str:
    db_url = (
        config.get("SQLALCHEMY_DATABASE_URI")
        or os.getenv("SQLALCHEMY_DATABASE_URI")
        or os.getenv("DATABASE_URL")
        or os.getenv("POSTGRES_URL")
    )
    if not db_url:
        raise RuntimeError("Missing DATABASE_URL or SQLALCHEMY_DATABASE_URI environment variable")
    return _normalize_pg_uri(db_url)


# -------------------------------------------------------------------
# Fabrique
# -------------------------------------------------------------------
def create_app(config: dict | None = None) -> Flask:
    config = dict(config or {})
    app = Flask(__name__)

    secret = os.environ.get("SECRET_KEY", "dev-change-me")
    app.config.update(
        SECRET_KEY=secret,
        JWT_SECRET_KEY=os.environ.get("JWT_SECRET_KEY") or secret,
        JWT_EXPIRES_HOURS=int(os.environ.get("JWT_EXPIRES_HOURS", "24")),
        BRAND_NAME=os.getenv("BRAND_NAME", "MediRDV"),
        APP_ENV=os.getenv("APP_ENV", "development"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
    )
    app.config["SQLALCHEMY_DATABASE_URI"] = _database_url(config)
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("postgresql"):
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_pre_ping": True,
            "pool_recycle": 1800,
            "pool_size": 5,
            "max_overflow": 10,
        }
    app.config.update(config)

    # Proxy (Render/Cloudflare)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    db.init_app(app)
    login_manager.init_app(app)

    # imports tardifs : les modules de routes dépendent des modèles
    from admin_server import admin_bp
    from auth import auth_bp, load_request_identity
    from chatbot import chatbot_bp, init_chatbot
    from commands import register_commands
    from medical_records import dossiers_bp
    from notification_center import notifications_bp, templates_bp
    from patient_portal import appointments_bp
    from pro_office import doctors_bp

    app.before_request(load_request_identity)

    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(doctors_bp, url_prefix="/api/doctors")
    app.register_blueprint(appointments_bp, url_prefix="/api/appointments")
    app.register_blueprint(admin_bp, url_prefix="/api")
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")
    app.register_blueprint(templates_bp, url_prefix="/api/notification-templates")
    app.register_blueprint(dossiers_bp, url_prefix="/api/medical-dossiers")
    app.register_blueprint(chatbot_bp, url_prefix="/api/chatbot")

    init_chatbot(app)
    register_commands(app)
    _register_error_handlers(app)

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "brand": app.config["BRAND_NAME"]})

    app.logger.info("[APP] %s démarrée (env=%s)", app.config["BRAND_NAME"], app.config["APP_ENV"])
    return app


# -------------------------------------------------------------------
# Erreurs JSON
# -------------------------------------------------------------------
def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"success": False, "message": "Ressource introuvable"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"success": False, "message": "Méthode non autorisée"}), 405

    @app.errorhandler(Exception)
    def server_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "message": e.description}), e.code
        db.session.rollback()
        app.logger.exception("[APP] erreur inattendue: %s", e)
        if app.config["APP_ENV"] == "production":
            message = "Erreur interne du serveur"
        else:
            message = str(e)
        return jsonify({"success": False, "message": message}), 500


if __name__ == "__main__":
    create_app().run(
        host="0.0.0.0",
        port=int(os.getenv("PORT", "5000")),
        debug=os.getenv("APP_ENV", "development") != "production",
    )
