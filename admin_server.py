# admin_server.py — Blueprint d'administration : utilisateurs, catalogue de permissions, spécialités
from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request
from flask_login import login_required
from werkzeug.security import generate_password_hash

from errors import AuthorizationError, NotFoundError, ValidationError
from models import (
    db, Permission, RolePermission, ROLES, Specialty, User, UserPermission, USER_STATUSES,
)
from permissions import (
    SPECIALTY_CREATE, SPECIALTY_DELETE, SPECIALTY_UPDATE, USER_DELETE,
    can_manage_permissions, can_update_user, can_view_user, require_permission,
    resolve_effective_permissions, role_has_permission,
)

admin_bp = Blueprint("admin", __name__)


def _json():
    return request.get_json(silent=True) or {}


def _ensure_can_manage_permissions():
    if not can_manage_permissions(g.user_role):
        raise AuthorizationError("Seul un administrateur peut gérer les permissions")


def _get_or_404(model, obj_id, label):
    obj = db.session.get(model, obj_id) if obj_id is not None else None
    if obj is None:
        raise NotFoundError(f"{label} introuvable")
    return obj


def _parse_bool(value):
    if value is None:
        return None
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_datetime(value, field):
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"{field} invalide (ISO 8601 attendu)")


# ======================
# Utilisateurs
# ======================
@admin_bp.route("/users", methods=["GET"])
@login_required
def list_users():
    if not can_view_user(g.user_id, None, g.user_role):
        raise AuthorizationError("Accès refusé à la liste des utilisateurs")
    q = User.query
    role = request.args.get("role")
    if role:
        q = q.filter_by(role=role)
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    return jsonify([u.to_dict() for u in q.order_by(User.id).all()])


@admin_bp.route("/users/<int:user_id>", methods=["GET"])
@login_required
def get_user(user_id):
    if not can_view_user(g.user_id, user_id, g.user_role):
        raise AuthorizationError("Vous ne pouvez consulter que votre propre profil")
    return jsonify(_get_or_404(User, user_id, "Utilisateur").to_dict())


@admin_bp.route("/users/<int:user_id>", methods=["PUT"])
@login_required
def update_user(user_id):
    if not can_update_user(g.user_id, user_id, g.user_role):
        raise AuthorizationError("Vous ne pouvez modifier que votre propre profil")
    user = _get_or_404(User, user_id, "Utilisateur")
    data = _json()

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name ne peut pas être vide")
        user.name = name
    if "phone" in data:
        user.phone = data.get("phone")
    if data.get("password"):
        if len(data["password"]) < 8:
            raise ValidationError("Le mot de passe doit contenir au moins 8 caractères")
        user.password_hash = generate_password_hash(data["password"])

    # rôle et statut : administrateur uniquement
    if "role" in data or "status" in data:
        if g.user_role != "admin":
            raise AuthorizationError("Seul un administrateur peut changer le rôle ou le statut")
        if "role" in data:
            if data["role"] not in ROLES:
                raise ValidationError(f"Rôle invalide : {data['role']}")
            user.role = data["role"]
        if "status" in data:
            if data["status"] not in USER_STATUSES:
                raise ValidationError(f"Statut invalide : {data['status']}")
            user.status = data["status"]

    db.session.commit()
    return jsonify({"success": True, "message": "Utilisateur mis à jour", "user": user.to_dict()})


@admin_bp.route("/users/<int:user_id>", methods=["DELETE"])
@login_required
@require_permission(USER_DELETE)
def delete_user(user_id):
    user = _get_or_404(User, user_id, "Utilisateur")
    db.session.delete(user)
    db.session.commit()
    current_app.logger.info("[ADMIN] utilisateur %s supprimé par %s", user_id, g.user_id)
    return jsonify({"success": True, "message": "Utilisateur supprimé"})


@admin_bp.route("/users/<int:user_id>/effective-permissions", methods=["GET"])
@login_required
def user_effective_permissions(user_id):
    if not (can_view_user(g.user_id, user_id, g.user_role) or can_manage_permissions(g.user_role)):
        raise AuthorizationError("Accès refusé")
    user = _get_or_404(User, user_id, "Utilisateur")
    return jsonify(resolve_effective_permissions(user.id, user.role).to_dict())


# ======================
# Catalogue de permissions
# ======================
@admin_bp.route("/permissions", methods=["GET"])
@login_required
def list_permissions():
    _ensure_can_manage_permissions()
    q = Permission.query
    category = request.args.get("category")
    if category:
        q = q.filter_by(category=category)
    active = _parse_bool(request.args.get("active"))
    if active is not None:
        q = q.filter(Permission.is_active.is_(active))
    return jsonify([p.to_dict() for p in q.order_by(Permission.category, Permission.name).all()])


@admin_bp.route("/permissions/<int:permission_id>", methods=["GET"])
@login_required
def get_permission(permission_id):
    _ensure_can_manage_permissions()
    return jsonify(_get_or_404(Permission, permission_id, "Permission").to_dict())


@admin_bp.route("/permissions", methods=["POST"])
@login_required
def create_permission():
    _ensure_can_manage_permissions()
    data = _json()
    name = (data.get("name") or "").strip()
    description = (data.get("description") or "").strip()
    if not name or not description:
        raise ValidationError("name et description sont requis")
    if Permission.query.filter_by(name=name).first():
        raise ValidationError(f"La permission {name} existe déjà")
    perm = Permission(
        name=name,
        description=description,
        category=(data.get("category") or "general").strip(),
        is_active=bool(data.get("isActive", True)),
    )
    db.session.add(perm)
    db.session.commit()
    current_app.logger.info("[PERM] permission créée %s", name)
    return jsonify({"success": True, "message": "Permission créée", "permission": perm.to_dict()}), 201


@admin_bp.route("/permissions/<int:permission_id>", methods=["PUT"])
@login_required
def update_permission(permission_id):
    _ensure_can_manage_permissions()
    perm = _get_or_404(Permission, permission_id, "Permission")
    data = _json()
    if "name" in data and data["name"] != perm.name:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name ne peut pas être vide")
        if Permission.query.filter_by(name=name).first():
            raise ValidationError(f"La permission {name} existe déjà")
        perm.name = name
    if "description" in data:
        perm.description = data["description"]
    if "category" in data:
        perm.category = data["category"] or "general"
    if "isActive" in data:
        perm.is_active = bool(data["isActive"])
    db.session.commit()
    return jsonify({"success": True, "message": "Permission mise à jour", "permission": perm.to_dict()})


@admin_bp.route("/permissions/<int:permission_id>", methods=["DELETE"])
@login_required
def delete_permission(permission_id):
    _ensure_can_manage_permissions()
    perm = _get_or_404(Permission, permission_id, "Permission")
    role_refs = perm.role_grants.count()
    user_refs = perm.user_grants.count()
    if role_refs or user_refs:
        raise ValidationError(
            f"Permission utilisée ({role_refs} attribution(s) de rôle, "
            f"{user_refs} attribution(s) utilisateur) : révoquez-les ou désactivez-la"
        )
    db.session.delete(perm)
    db.session.commit()
    return jsonify({"success": True, "message": "Permission supprimée"})


@admin_bp.route("/permissions/<int:permission_id>/activate", methods=["PUT"])
@login_required
def activate_permission(permission_id):
    _ensure_can_manage_permissions()
    perm = _get_or_404(Permission, permission_id, "Permission")
    perm.is_active = True
    db.session.commit()
    return jsonify({"success": True, "permission": perm.to_dict()})


@admin_bp.route("/permissions/<int:permission_id>/deactivate", methods=["PUT"])
@login_required
def deactivate_permission(permission_id):
    _ensure_can_manage_permissions()
    perm = _get_or_404(Permission, permission_id, "Permission")
    perm.is_active = False
    db.session.commit()
    return jsonify({"success": True, "permission": perm.to_dict()})


# ======================
# Permissions de rôle
# ======================
def _validate_role(role):
    if role not in ROLES:
        raise ValidationError(f"Rôle invalide : {role}")


@admin_bp.route("/role-permissions", methods=["GET"])
@login_required
def list_role_permissions():
    _ensure_can_manage_permissions()
    q = RolePermission.query
    role = request.args.get("role")
    if role:
        q = q.filter_by(role=role)
    return jsonify([rp.to_dict() for rp in q.order_by(RolePermission.role, RolePermission.id).all()])


@admin_bp.route("/role-permissions", methods=["POST"])
@login_required
def grant_role_permission():
    _ensure_can_manage_permissions()
    data = _json()
    role = data.get("role")
    _validate_role(role)
    perm = _get_or_404(Permission, data.get("permissionId"), "Permission")
    if RolePermission.query.filter_by(role=role, permission_id=perm.id).first():
        raise ValidationError(f"Le rôle {role} a déjà la permission {perm.name}")
    rp = RolePermission(role=role, permission_id=perm.id, granted_by=g.user_id)
    db.session.add(rp)
    db.session.commit()
    current_app.logger.info("[PERM] %s accordée au rôle %s par %s", perm.name, role, g.user_id)
    return jsonify({"success": True, "message": "Permission accordée au rôle", "rolePermission": rp.to_dict()}), 201


@admin_bp.route("/role-permissions/<role>/<int:permission_id>", methods=["DELETE"])
@login_required
def revoke_role_permission(role, permission_id):
    _ensure_can_manage_permissions()
    rp = RolePermission.query.filter_by(role=role, permission_id=permission_id).first()
    if rp is None:
        raise NotFoundError("Permission de rôle introuvable")
    db.session.delete(rp)
    db.session.commit()
    current_app.logger.info("[PERM] permission %s retirée du rôle %s", permission_id, role)
    return jsonify({"success": True, "message": "Permission retirée du rôle"})


@admin_bp.route("/role-permissions/<role>", methods=["DELETE"])
@login_required
def revoke_all_role_permissions(role):
    _ensure_can_manage_permissions()
    _validate_role(role)
    count = RolePermission.query.filter_by(role=role).delete(synchronize_session=False)
    db.session.commit()
    current_app.logger.info("[PERM] %d permission(s) retirée(s) du rôle %s", count, role)
    return jsonify({"success": True, "message": f"{count} permission(s) retirée(s)", "count": count})


@admin_bp.route("/role-permissions/check", methods=["GET"])
@login_required
def check_role_permission():
    _ensure_can_manage_permissions()
    role = request.args.get("role")
    name = request.args.get("permission")
    if not role or not name:
        raise ValidationError("role et permission sont requis")
    return jsonify({"role": role, "permission": name, "granted": role_has_permission(role, name)})


# ======================
# Permissions utilisateur (accords, refus, portée)
# ======================
@admin_bp.route("/user-permissions", methods=["GET"])
@login_required
def list_user_permissions():
    _ensure_can_manage_permissions()
    q = UserPermission.query
    user_id = request.args.get("userId", type=int)
    if user_id:
        q = q.filter_by(user_id=user_id)
    permission_id = request.args.get("permissionId", type=int)
    if permission_id:
        q = q.filter_by(permission_id=permission_id)
    granted = _parse_bool(request.args.get("isGranted"))
    if granted is not None:
        q = q.filter(UserPermission.is_granted.is_(granted))
    resource_type = request.args.get("resourceType")
    if resource_type:
        q = q.filter_by(resource_type=resource_type)
    return jsonify([up.to_dict() for up in q.order_by(UserPermission.id).all()])


def _same_scope(user_id, permission_id, resource_type, resource_id, is_granted):
    return UserPermission.query.filter_by(
        user_id=user_id, permission_id=permission_id,
        resource_type=resource_type, resource_id=resource_id, is_granted=is_granted,
    ).first()


def _set_granted(up: UserPermission, is_granted: bool):
    if up.is_granted == is_granted:
        return
    if _same_scope(up.user_id, up.permission_id, up.resource_type, up.resource_id, is_granted) is not None:
        kind = "accord" if is_granted else "refus"
        raise ValidationError(f"Un {kind} existe déjà pour cette permission et cette portée")
    up.is_granted = is_granted


@admin_bp.route("/user-permissions", methods=["POST"])
@login_required
def grant_user_permission():
    _ensure_can_manage_permissions()
    data = _json()
    user = _get_or_404(User, data.get("userId"), "Utilisateur")
    perm = _get_or_404(Permission, data.get("permissionId"), "Permission")
    resource_type = data.get("resourceType") or None
    resource_id = data.get("resourceId")
    resource_id = None if resource_id in (None, "") else str(resource_id)
    if resource_id is not None and resource_type is None:
        raise ValidationError("resourceType est requis avec resourceId")

    is_granted = bool(data.get("isGranted", True))
    if _same_scope(user.id, perm.id, resource_type, resource_id, is_granted) is not None:
        kind = "accord" if is_granted else "refus"
        raise ValidationError(f"Un {kind} existe déjà pour cette permission et cette portée")

    up = UserPermission(
        user_id=user.id,
        permission_id=perm.id,
        is_granted=is_granted,
        resource_type=resource_type,
        resource_id=resource_id,
        expires_at=_parse_datetime(data.get("expiresAt"), "expiresAt"),
        granted_by=g.user_id,
        reason=data.get("reason"),
    )
    db.session.add(up)
    db.session.commit()
    current_app.logger.info(
        "[PERM] %s %s user=%s portée=%s:%s par %s",
        "accord" if up.is_granted else "refus", perm.name, user.id, resource_type, resource_id, g.user_id,
    )
    return jsonify({"success": True, "message": "Permission utilisateur enregistrée", "userPermission": up.to_dict()}), 201


@admin_bp.route("/user-permissions/<int:up_id>", methods=["DELETE"])
@login_required
def revoke_user_permission(up_id):
    _ensure_can_manage_permissions()
    up = _get_or_404(UserPermission, up_id, "Permission utilisateur")
    db.session.delete(up)
    db.session.commit()
    return jsonify({"success": True, "message": "Permission utilisateur supprimée"})


@admin_bp.route("/user-permissions/<int:up_id>/activate", methods=["PUT"])
@login_required
def activate_user_permission(up_id):
    _ensure_can_manage_permissions()
    up = _get_or_404(UserPermission, up_id, "Permission utilisateur")
    _set_granted(up, True)
    db.session.commit()
    return jsonify({"success": True, "userPermission": up.to_dict()})


@admin_bp.route("/user-permissions/<int:up_id>/deactivate", methods=["PUT"])
@login_required
def deactivate_user_permission(up_id):
    _ensure_can_manage_permissions()
    up = _get_or_404(UserPermission, up_id, "Permission utilisateur")
    _set_granted(up, False)
    db.session.commit()
    return jsonify({"success": True, "userPermission": up.to_dict()})


@admin_bp.route("/user-permissions/check", methods=["GET"])
@login_required
def check_user_permission():
    _ensure_can_manage_permissions()
    user = _get_or_404(User, request.args.get("userId", type=int), "Utilisateur")
    name = request.args.get("permission")
    if not name:
        raise ValidationError("permission est requis")
    perms = resolve_effective_permissions(user.id, user.role)
    granted = user.role == "admin" or perms.allows(
        name, request.args.get("resourceType"), request.args.get("resourceId"),
    )
    return jsonify({"userId": user.id, "permission": name, "granted": granted})


# ======================
# Spécialités
# ======================
@admin_bp.route("/specialties", methods=["GET"])
def list_specialties():
    return jsonify([s.to_dict() for s in Specialty.query.order_by(Specialty.name).all()])


@admin_bp.route("/specialties/<int:specialty_id>", methods=["GET"])
def get_specialty(specialty_id):
    return jsonify(_get_or_404(Specialty, specialty_id, "Spécialité").to_dict())


@admin_bp.route("/specialties", methods=["POST"])
@login_required
@require_permission(SPECIALTY_CREATE)
def create_specialty():
    data = _json()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name est requis")
    if Specialty.query.filter_by(name=name).first():
        raise ValidationError(f"La spécialité {name} existe déjà")
    sp = Specialty(name=name, description=data.get("description"))
    db.session.add(sp)
    db.session.commit()
    return jsonify({"success": True, "message": "Spécialité créée", "specialty": sp.to_dict()}), 201


@admin_bp.route("/specialties/<int:specialty_id>", methods=["PUT"])
@login_required
@require_permission(SPECIALTY_UPDATE)
def update_specialty(specialty_id):
    sp = _get_or_404(Specialty, specialty_id, "Spécialité")
    data = _json()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name ne peut pas être vide")
        sp.name = name
    if "description" in data:
        sp.description = data["description"]
    db.session.commit()
    return jsonify({"success": True, "message": "Spécialité mise à jour", "specialty": sp.to_dict()})


@admin_bp.route("/specialties/<int:specialty_id>", methods=["DELETE"])
@login_required
@require_permission(SPECIALTY_DELETE)
def delete_specialty(specialty_id):
    sp = _get_or_404(Specialty, specialty_id, "Spécialité")
    db.session.delete(sp)
    db.session.commit()
    return jsonify({"success": True, "message": "Spécialité supprimée"})
