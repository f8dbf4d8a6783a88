# permissions.py — catalogue, résolution des permissions effectives et contrôles d'accès
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import NamedTuple, Optional

from flask import current_app, g
from sqlalchemy import or_

from errors import AuthorizationError
from models import (
    db, Appointment, Doctor, DoctorManager, Permission, RolePermission, UserPermission,
)

# ======================
# Catalogue
# ======================
USER_VIEW_ALL = "user:view_all"
USER_VIEW_OWN = "user:view_own"
USER_CREATE = "user:create"
USER_UPDATE_ALL = "user:update_all"
USER_UPDATE_OWN = "user:update_own"
USER_DELETE = "user:delete"

NOTIFICATION_VIEW_ALL = "notification:view_all"
NOTIFICATION_VIEW_OWN = "notification:view_own"
NOTIFICATION_CREATE = "notification:create"
NOTIFICATION_MANAGE_ALL = "notification:manage_all"

DOCTOR_VIEW_ALL = "doctor:view_all"
DOCTOR_VIEW_OWN = "doctor:view_own"
DOCTOR_CREATE = "doctor:create"
DOCTOR_UPDATE_ALL = "doctor:update_all"
DOCTOR_UPDATE_OWN = "doctor:update_own"
DOCTOR_DELETE = "doctor:delete"
DOCTOR_MANAGE = "doctor:manage"
DOCTOR_APPROVE_ABSENCES = "doctor:approve_absences"

APPOINTMENT_VIEW_ALL = "appointment:view_all"
APPOINTMENT_VIEW_OWN = "appointment:view_own"
APPOINTMENT_CREATE = "appointment:create"
APPOINTMENT_UPDATE_ALL = "appointment:update_all"
APPOINTMENT_UPDATE_OWN = "appointment:update_own"
APPOINTMENT_DELETE = "appointment:delete"

SPECIALTY_VIEW = "specialty:view"
SPECIALTY_CREATE = "specialty:create"
SPECIALTY_UPDATE = "specialty:update"
SPECIALTY_DELETE = "specialty:delete"

MEDICAL_DOSSIER_VIEW_ALL = "medicalDossier:view_all"
MEDICAL_DOSSIER_MANAGE = "medicalDossier:manage"

PERMISSION_VIEW_ALL = "permission:view_all"
PERMISSION_MANAGE = "permission:manage"

# nom -> (description, catégorie)
CATALOG = {
    USER_VIEW_ALL: ("Voir tous les utilisateurs", "user"),
    USER_VIEW_OWN: ("Voir son propre profil", "user"),
    USER_CREATE: ("Créer des utilisateurs", "user"),
    USER_UPDATE_ALL: ("Modifier tous les utilisateurs", "user"),
    USER_UPDATE_OWN: ("Modifier son propre profil", "user"),
    USER_DELETE: ("Supprimer des utilisateurs", "user"),
    NOTIFICATION_VIEW_ALL: ("Voir toutes les notifications", "notification"),
    NOTIFICATION_VIEW_OWN: ("Voir ses notifications", "notification"),
    NOTIFICATION_CREATE: ("Créer des notifications", "notification"),
    NOTIFICATION_MANAGE_ALL: ("Gérer toutes les notifications", "notification"),
    DOCTOR_VIEW_ALL: ("Voir tous les médecins", "doctor"),
    DOCTOR_VIEW_OWN: ("Voir son profil médecin", "doctor"),
    DOCTOR_CREATE: ("Créer des médecins", "doctor"),
    DOCTOR_UPDATE_ALL: ("Modifier tous les médecins", "doctor"),
    DOCTOR_UPDATE_OWN: ("Modifier son profil médecin", "doctor"),
    DOCTOR_DELETE: ("Supprimer des médecins", "doctor"),
    DOCTOR_MANAGE: ("Gérer l'agenda des médecins", "doctor"),
    DOCTOR_APPROVE_ABSENCES: ("Valider les absences des médecins", "doctor"),
    APPOINTMENT_VIEW_ALL: ("Voir tous les rendez-vous", "appointment"),
    APPOINTMENT_VIEW_OWN: ("Voir ses rendez-vous", "appointment"),
    APPOINTMENT_CREATE: ("Prendre des rendez-vous", "appointment"),
    APPOINTMENT_UPDATE_ALL: ("Modifier tous les rendez-vous", "appointment"),
    APPOINTMENT_UPDATE_OWN: ("Modifier ses rendez-vous", "appointment"),
    APPOINTMENT_DELETE: ("Supprimer des rendez-vous", "appointment"),
    SPECIALTY_VIEW: ("Voir les spécialités", "specialty"),
    SPECIALTY_CREATE: ("Créer des spécialités", "specialty"),
    SPECIALTY_UPDATE: ("Modifier des spécialités", "specialty"),
    SPECIALTY_DELETE: ("Supprimer des spécialités", "specialty"),
    MEDICAL_DOSSIER_VIEW_ALL: ("Voir tous les dossiers médicaux", "medicalDossier"),
    MEDICAL_DOSSIER_MANAGE: ("Gérer les dossiers médicaux", "medicalDossier"),
    PERMISSION_VIEW_ALL: ("Voir les permissions", "permission"),
    PERMISSION_MANAGE: ("Gérer les permissions", "permission"),
}

# Permissions de rôle posées par `flask seed` (l'admin contourne les contrôles)
DEFAULT_ROLE_PERMISSIONS = {
    "patient": [
        USER_VIEW_OWN, USER_UPDATE_OWN, NOTIFICATION_VIEW_OWN, DOCTOR_VIEW_ALL,
        APPOINTMENT_VIEW_OWN, APPOINTMENT_CREATE, APPOINTMENT_UPDATE_OWN, SPECIALTY_VIEW,
    ],
    "doctor": [
        USER_VIEW_OWN, USER_UPDATE_OWN, NOTIFICATION_VIEW_OWN, DOCTOR_VIEW_ALL,
        DOCTOR_VIEW_OWN, DOCTOR_UPDATE_OWN, APPOINTMENT_VIEW_OWN, APPOINTMENT_UPDATE_OWN,
        SPECIALTY_VIEW, MEDICAL_DOSSIER_MANAGE,
    ],
    "responsable": [
        USER_VIEW_ALL, USER_VIEW_OWN, USER_UPDATE_OWN, NOTIFICATION_VIEW_OWN,
        NOTIFICATION_CREATE, DOCTOR_VIEW_ALL, DOCTOR_UPDATE_ALL, DOCTOR_MANAGE,
        DOCTOR_APPROVE_ABSENCES, APPOINTMENT_VIEW_ALL, APPOINTMENT_UPDATE_ALL,
        SPECIALTY_VIEW, MEDICAL_DOSSIER_VIEW_ALL,
    ],
    "admin": list(CATALOG),
}


# ======================
# Permissions effectives
# ======================
class GrantKey(NamedTuple):
    """Clé composite (permission, type de ressource, id de ressource); None = global."""
    permission_id: int
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.resource_type is None and self.resource_id is None


@dataclass
class EffectivePermission:
    id: int
    name: str
    description: str
    category: str
    source: str  # "role" | "user"
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_global(self) -> bool:
        return self.resource_type is None and self.resource_id is None

    def covers(self, resource_type: Optional[str] = None, resource_id=None) -> bool:
        if self.is_global:
            return True
        if resource_type is None or self.resource_type != resource_type:
            return False
        if self.resource_id is None:
            return True
        return resource_id is not None and self.resource_id == str(resource_id)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "source": self.source,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class EffectivePermissions:
    all: list = field(default_factory=list)

    def names(self) -> set:
        return {p.name for p in self.all}

    def allows(self, name: str, resource_type: Optional[str] = None, resource_id=None) -> bool:
        return any(p.name == name and p.covers(resource_type, resource_id) for p in self.all)

    def to_dict(self):
        return {"all": [p.to_dict() for p in self.all]}


def _not_expired(now: datetime):
    return or_(UserPermission.expires_at.is_(None), UserPermission.expires_at > now)


def _key_for(permission_id: int, resource_type, resource_id) -> GrantKey:
    if resource_type is None and resource_id is None:
        return GrantKey(permission_id)
    return GrantKey(permission_id, resource_type, None if resource_id is None else str(resource_id))


def _load_effective_permissions(user_id: int, role: str, now: datetime) -> EffectivePermissions:
    role_rows = (
        RolePermission.query.join(Permission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role == role, Permission.is_active.is_(True))
        .all()
    )
    granted_rows = (
        UserPermission.query.join(Permission, UserPermission.permission_id == Permission.id)
        .filter(
            UserPermission.user_id == user_id,
            UserPermission.is_granted.is_(True),
            Permission.is_active.is_(True),
            _not_expired(now),
        )
        .all()
    )
    denial_rows = (
        db.session.query(
            UserPermission.permission_id,
            UserPermission.resource_type,
            UserPermission.resource_id,
        )
        .filter(
            UserPermission.user_id == user_id,
            UserPermission.is_granted.is_(False),
            _not_expired(now),
        )
        .all()
    )
    denied = {_key_for(pid, rtype, rid) for pid, rtype, rid in denial_rows}

    merged = []
    for rp in role_rows:
        if GrantKey(rp.permission_id) in denied:
            continue
        p = rp.permission
        merged.append(EffectivePermission(
            id=p.id, name=p.name, description=p.description, category=p.category, source="role",
        ))

    for up in granted_rows:
        key = _key_for(up.permission_id, up.resource_type, up.resource_id)
        if key in denied:
            continue
        p = up.permission
        entry = EffectivePermission(
            id=p.id, name=p.name, description=p.description, category=p.category, source="user",
            resource_type=key.resource_type, resource_id=key.resource_id, expires_at=up.expires_at,
        )
        if not key.is_global:
            merged.append(entry)
            continue
        # une permission utilisateur globale remplace l'entrée de rôle du même nom
        for i, existing in enumerate(merged):
            if existing.name == entry.name and existing.source == "role":
                merged[i] = entry
                break
        else:
            merged.append(entry)

    return EffectivePermissions(all=merged)


def resolve_effective_permissions(user_id: int, role: str, now: datetime | None = None) -> EffectivePermissions:
    """Fusionne permissions de rôle, permissions utilisateur et refus explicites.

    En cas d'erreur de lecture, renvoie un ensemble vide : les contrôles refusent alors l'accès.
    """
    try:
        return _load_effective_permissions(user_id, role, now or datetime.utcnow())
    except Exception as e:
        # Postgres : transaction interrompue après une requête en échec
        db.session.rollback()
        current_app.logger.exception("[PERM] résolution impossible user=%s role=%s: %s", user_id, role, e)
        return EffectivePermissions()


def role_has_permission(role: str, name: str) -> bool:
    return (
        RolePermission.query.join(Permission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role == role, Permission.name == name, Permission.is_active.is_(True))
        .first()
        is not None
    )


# ======================
# Contexte requête
# ======================
def current_permissions() -> EffectivePermissions:
    return getattr(g, "permissions", None) or EffectivePermissions()


def has_permission(name: str, resource_type: Optional[str] = None, resource_id=None) -> bool:
    if getattr(g, "user_role", None) == "admin":
        return True
    return current_permissions().allows(name, resource_type, resource_id)


def same_user(a, b) -> bool:
    try:
        return a is not None and b is not None and int(a) == int(b)
    except (TypeError, ValueError):
        return False


def doctor_for_user(user_id) -> Doctor | None:
    if user_id is None:
        return None
    return Doctor.query.filter_by(user_id=user_id).first()


def is_doctor_manager(user_id, doctor_id, *, schedule: bool = False, appointments: bool = False) -> bool:
    q = DoctorManager.query.filter_by(doctor_id=doctor_id, manager_id=user_id)
    if schedule:
        q = q.filter(DoctorManager.can_edit_schedule.is_(True))
    if appointments:
        q = q.filter(DoctorManager.can_manage_appointments.is_(True))
    return q.first() is not None


def can_access_doctor_appointments(user_id, doctor_id, role) -> bool:
    if role in ("admin", "responsable"):
        return True
    if role == "doctor":
        doctor = doctor_for_user(user_id)
        if doctor is not None and doctor.id == int(doctor_id):
            return True
    return is_doctor_manager(user_id, doctor_id, appointments=True)


def can_manage_doctor(user_id, doctor_id, role) -> bool:
    """Admin, le médecin lui-même, ou un responsable explicitement rattaché."""
    if role == "admin":
        return True
    if role == "doctor":
        doctor = doctor_for_user(user_id)
        return doctor is not None and doctor.id == int(doctor_id)
    if role == "responsable":
        return is_doctor_manager(user_id, doctor_id, schedule=True)
    return False


def can_access_user_notifications(user_id, target_user_id, role) -> bool:
    if same_user(user_id, target_user_id) or role == "admin":
        return True
    return has_permission(NOTIFICATION_VIEW_ALL, "user", target_user_id)


def can_manage_user_notifications(user_id, target_user_id, role) -> bool:
    if same_user(user_id, target_user_id) or role == "admin":
        return True
    return has_permission(NOTIFICATION_MANAGE_ALL, "user", target_user_id)


def can_view_user(user_id, target_user_id, role) -> bool:
    if same_user(user_id, target_user_id) or role == "admin":
        return True
    return has_permission(USER_VIEW_ALL, "user", target_user_id)


def can_update_user(user_id, target_user_id, role) -> bool:
    if same_user(user_id, target_user_id) or role == "admin":
        return True
    return has_permission(USER_UPDATE_ALL, "user", target_user_id)


def can_access_user_appointments(user_id, target_user_id, role) -> bool:
    if same_user(user_id, target_user_id) or role == "admin":
        return True
    return has_permission(APPOINTMENT_VIEW_ALL, "user", target_user_id)


def can_manage_permissions(role) -> bool:
    return role == "admin" or has_permission(PERMISSION_MANAGE)


def can_access_medical_dossier(user_id, patient_id, role) -> bool:
    if role in ("admin", "responsable"):
        return True
    if role == "patient" and same_user(user_id, patient_id):
        return True
    if role == "doctor":
        doctor = doctor_for_user(user_id)
        if doctor is not None:
            seen = Appointment.query.filter_by(doctor_id=doctor.id, user_id=patient_id).first()
            if seen is not None:
                return True
    return has_permission(MEDICAL_DOSSIER_VIEW_ALL, "patient", patient_id)


def can_manage_medical_dossier(role) -> bool:
    if role in ("admin", "responsable", "doctor"):
        return True
    return has_permission(MEDICAL_DOSSIER_MANAGE)


# ======================
# Décorateurs de route
# ======================
def roles_required(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if getattr(g, "user_role", None) not in roles:
                raise AuthorizationError(f"Rôle requis : {', '.join(roles)}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_permission(name: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not has_permission(name):
                current_app.logger.info("[PERM] refus %s user=%s", name, getattr(g, "user_id", None))
                raise AuthorizationError(f"Permission requise : {name}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator