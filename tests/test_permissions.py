"""
Résolution des permissions effectives : rôle + accords utilisateur + refus.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import text

import permissions as P
from models import Permission, UserPermission


# ── Helpers ──────────────────────────────────────────────────────────

def _perm(name):
    return Permission.query.filter_by(name=name).one()


def _user_perm(db, user, name, granted=True, resource_type=None, resource_id=None, expires_at=None):
    row = UserPermission(
        user_id=user.id, permission_id=_perm(name).id, is_granted=granted,
        resource_type=resource_type, resource_id=resource_id, expires_at=expires_at,
    )
    db.session.add(row)
    db.session.commit()
    return row


def _entries(perms, name):
    return [p for p in perms.all if p.name == name]


# ── Fusion ───────────────────────────────────────────────────────────

def test_role_permissions_are_loaded(patient):
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.APPOINTMENT_CREATE in perms.names()
    assert all(p.source == "role" for p in perms.all)
    assert P.PERMISSION_MANAGE not in perms.names()


def test_global_denial_removes_role_permission(db, patient):
    _user_perm(db, patient, P.APPOINTMENT_CREATE, granted=False)
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.APPOINTMENT_CREATE not in perms.names()
    assert P.DOCTOR_VIEW_ALL in perms.names()


def test_scoped_denial_leaves_global_role_permission(db, patient):
    _user_perm(db, patient, P.APPOINTMENT_CREATE, granted=False, resource_type="doctor", resource_id="3")
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.APPOINTMENT_CREATE in perms.names()


def test_user_global_grant_replaces_role_entry_and_keeps_scoped_entry(db, patient):
    _user_perm(db, patient, P.DOCTOR_VIEW_ALL)
    _user_perm(db, patient, P.DOCTOR_VIEW_ALL, resource_type="doctor", resource_id="5")

    entries = _entries(P.resolve_effective_permissions(patient.id, patient.role), P.DOCTOR_VIEW_ALL)
    assert len(entries) == 2
    globals_ = [e for e in entries if e.is_global]
    assert len(globals_) == 1
    assert globals_[0].source == "user"
    scoped = [e for e in entries if not e.is_global]
    assert scoped[0].resource_type == "doctor"
    assert scoped[0].resource_id == "5"


def test_user_grant_adds_permission_missing_from_role(db, patient):
    _user_perm(db, patient, P.NOTIFICATION_CREATE)
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.NOTIFICATION_CREATE in perms.names()


def test_denial_of_same_scope_removes_scoped_grant(db, patient):
    _user_perm(db, patient, P.NOTIFICATION_CREATE, resource_type="doctor", resource_id="7")
    _user_perm(db, patient, P.NOTIFICATION_CREATE, granted=False, resource_type="doctor", resource_id="7")
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.NOTIFICATION_CREATE not in perms.names()


# ── Expiration / désactivation ───────────────────────────────────────

def test_expired_grant_is_ignored(db, patient):
    _user_perm(db, patient, P.PERMISSION_MANAGE, expires_at=datetime.utcnow() - timedelta(hours=1))
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.PERMISSION_MANAGE not in perms.names()


def test_expired_denial_is_ignored(db, patient):
    _user_perm(db, patient, P.APPOINTMENT_CREATE, granted=False,
               expires_at=datetime.utcnow() - timedelta(minutes=5))
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.APPOINTMENT_CREATE in perms.names()


def test_future_expiry_is_kept(db, patient):
    expires = datetime.utcnow() + timedelta(days=1)
    _user_perm(db, patient, P.PERMISSION_MANAGE, expires_at=expires)
    entry = _entries(P.resolve_effective_permissions(patient.id, patient.role), P.PERMISSION_MANAGE)[0]
    assert entry.expires_at == expires


def test_inactive_permission_is_excluded(db, patient):
    _perm(P.DOCTOR_VIEW_ALL).is_active = False
    db.session.commit()
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert P.DOCTOR_VIEW_ALL not in perms.names()


def test_resolution_failure_yields_empty_set(monkeypatch, patient):
    def boom(*args, **kwargs):
        raise RuntimeError("base indisponible")

    monkeypatch.setattr(P, "_load_effective_permissions", boom)
    perms = P.resolve_effective_permissions(patient.id, patient.role)
    assert perms.all == []
    assert not perms.allows(P.APPOINTMENT_CREATE)


def test_resolution_failure_rolls_back_the_session(monkeypatch, patient):
    rollbacks = []

    def boom(*args, **kwargs):
        raise RuntimeError("base indisponible")

    monkeypatch.setattr(P, "_load_effective_permissions", boom)
    monkeypatch.setattr(P, "db", SimpleNamespace(session=SimpleNamespace(rollback=lambda: rollbacks.append(1))))
    P.resolve_effective_permissions(patient.id, patient.role)
    assert rollbacks == [1]


def test_failed_query_in_resolution_keeps_request_usable(client, db, monkeypatch, make_user, auth_headers):
    manager = make_user("responsable")

    def broken(*args, **kwargs):
        db.session.execute(text("SELECT * FROM table_absente"))

    monkeypatch.setattr(P, "_load_effective_permissions", broken)
    headers = auth_headers(manager)
    assert client.get("/api/appointments", headers=headers).status_code == 403
    resp = client.get(f"/api/users/{manager.id}", headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["id"] == manager.id


# ── Portée ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("rtype, rid, expected", [
    (None, None, False),
    ("doctor", None, False),
    ("doctor", 5, True),
    ("doctor", 6, False),
    ("appointment", 5, False),
])
def test_instance_scope_covers(rtype, rid, expected):
    entry = P.EffectivePermission(id=1, name="x", description="", category="c", source="user",
                                  resource_type="doctor", resource_id="5")
    assert entry.covers(rtype, rid) is expected


def test_type_scope_covers_any_instance():
    entry = P.EffectivePermission(id=1, name="x", description="", category="c", source="user",
                                  resource_type="doctor")
    assert entry.covers("doctor", 42)
    assert not entry.covers("appointment", 42)
    assert not entry.covers()


def test_global_entry_covers_everything():
    entry = P.EffectivePermission(id=1, name="x", description="", category="c", source="role")
    assert entry.covers()
    assert entry.covers("doctor", 1)


def test_grant_key_structural_equality():
    assert P.GrantKey(3, "doctor", "5") == P.GrantKey(3, "doctor", "5")
    assert P.GrantKey(3) != P.GrantKey(3, "doctor", None)
    assert P.GrantKey(3).is_global


# ── Contrôles via l'API ──────────────────────────────────────────────

def test_denied_permission_is_enforced_on_route(client, db, make_user, auth_headers):
    manager = make_user("responsable")
    assert client.get("/api/appointments", headers=auth_headers(manager)).status_code == 200

    _user_perm(db, manager, P.APPOINTMENT_VIEW_ALL, granted=False)
    resp = client.get("/api/appointments", headers=auth_headers(manager))
    assert resp.status_code == 403
    assert resp.get_json()["success"] is False


def test_me_returns_effective_permissions(client, patient, auth_headers):
    resp = client.get("/api/auth/me", headers=auth_headers(patient))
    assert resp.status_code == 200
    names = {p["name"] for p in resp.get_json()["permissions"]["all"]}
    assert P.APPOINTMENT_CREATE in names


def test_anonymous_request_gets_401(client):
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.get_json() == {"success": False, "message": "Authentification requise"}
