# auth.py — jetons JWT (Bearer / x-access-token), chargement de l'utilisateur, endpoints /api/auth
from datetime import datetime, timedelta

import jwt
from flask import Blueprint, current_app, g, jsonify, request
from flask_login import current_user, login_required
from werkzeug.security import check_password_hash, generate_password_hash

from booking import EMAIL_RE
from errors import AuthorizationError, ConflictError, ValidationError
from extensions import login_manager
from models import db, ROLES, User
from permissions import EffectivePermissions, resolve_effective_permissions

auth_bp = Blueprint("auth", __name__)


# ======================
# Jetons
# ======================
def generate_token(user: User) -> str:
    now = datetime.utcnow()
    payload = {
        "sub": str(user.id),
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(hours=current_app.config["JWT_EXPIRES_HOURS"]),
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET_KEY"], algorithm="HS256")


def verify_token(token: str):
    try:
        return jwt.decode(token, current_app.config["JWT_SECRET_KEY"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        current_app.logger.info("[AUTH] jeton expiré")
        return None
    except jwt.InvalidTokenError:
        return None


def _token_from_request(req):
    header = req.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip()
    return req.headers.get("x-access-token")


@login_manager.user_loader
def _load_user(user_id: str):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.request_loader
def _load_user_from_request(req):
    token = _token_from_request(req)
    if not token:
        return None
    payload = verify_token(token)
    if not payload:
        return None
    try:
        user = db.session.get(User, int(payload["sub"]))
    except (KeyError, ValueError):
        return None
    # compte suspendu/inactif : traité comme anonyme
    return user if user is not None and user.is_active else None


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"success": False, "message": "Authentification requise"}), 401


def load_request_identity():
    """before_request : expose g.user_id, g.user_role, g.permissions pour les contrôles d'accès."""
    g.user_id = None
    g.user_role = None
    g.permissions = EffectivePermissions()
    if current_user.is_authenticated:
        g.user_id = current_user.id
        g.user_role = current_user.role
        g.permissions = resolve_effective_permissions(current_user.id, current_user.role)


# ======================
# Endpoints
# ======================
@auth_bp.route("/register", methods=["POST"])
def register():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    role = data.get("role") or "patient"

    if not name or not email or not password:
        raise ValidationError("name, email et password sont requis")
    if not EMAIL_RE.match(email):
        raise ValidationError("Adresse e-mail invalide")
    if len(password) < 8:
        raise ValidationError("Le mot de passe doit contenir au moins 8 caractères")
    if role not in ROLES:
        raise ValidationError(f"Rôle invalide : {role}")
    # seuls les administrateurs créent des comptes non patients
    if role != "patient" and getattr(g, "user_role", None) != "admin":
        raise AuthorizationError("Seul un administrateur peut créer ce type de compte")
    if User.query.filter_by(email=email).first():
        raise ConflictError("Un compte existe déjà avec cet e-mail")

    user = User(
        name=name, email=email, phone=data.get("phone"), role=role,
        password_hash=generate_password_hash(password),
    )
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("[AUTH] inscription user=%s role=%s", user.id, role)
    return jsonify({"success": True, "message": "Compte créé", "user": user.to_dict()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    user = User.query.filter_by(email=email).first() if email else None
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        current_app.logger.info("[AUTH] échec de connexion pour %s", email or "-")
        return jsonify({"success": False, "message": "Identifiants invalides"}), 401
    if not user.is_active:
        return jsonify({"success": False, "message": f"Compte {user.status}"}), 403

    user.last_login_at = datetime.utcnow()
    db.session.commit()
    perms = resolve_effective_permissions(user.id, user.role)
    return jsonify({
        "success": True,
        "accessToken": generate_token(user),
        "user": user.to_dict(),
        "permissions": perms.to_dict(),
    })


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict(), "permissions": g.permissions.to_dict()})
