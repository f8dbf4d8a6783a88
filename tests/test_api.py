"""
Parcours HTTP complets : inscription / connexion, réservation, statuts, administration.
"""

import permissions as P
from models import Appointment, Permission, UserPermission


def _login(client, email, password="motdepasse123"):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return {"Authorization": f"Bearer {resp.get_json()['accessToken']}"}


# ── Scénario de bout en bout ─────────────────────────────────────────

def test_end_to_end_booking_scenario(client, admin, make_user, auth_headers):
    admin_h = auth_headers(admin)

    # médecin D : lundi 09:00–12:00
    resp = client.post("/api/auth/register", headers=admin_h, json={
        "name": "Dr Durand", "email": "durand@example.com", "password": "motdepasse123", "role": "doctor",
    })
    assert resp.status_code == 201
    doctor_user_id = resp.get_json()["user"]["id"]
    resp = client.post("/api/doctors", headers=admin_h, json={"userId": doctor_user_id, "languages": "fr, en"})
    assert resp.status_code == 201
    doctor = resp.get_json()["doctor"]
    assert doctor["languages"] == ["fr", "en"]

    doctor_h = _login(client, "durand@example.com")
    resp = client.post(f"/api/doctors/{doctor['id']}/availability", headers=doctor_h,
                       json={"dayOfWeek": "monday", "startTime": "09:00", "endTime": "12:00"})
    assert resp.status_code == 201

    # patient : réservation 2024-06-03 09:30
    client.post("/api/auth/register", json={
        "name": "Paul Patient", "email": "paul@example.com", "password": "motdepasse123",
    })
    patient_h = _login(client, "paul@example.com")
    resp = client.post("/api/appointments", headers=patient_h, json={
        "doctorId": doctor["id"], "date": "2024-06-03", "time": "09:30", "reason": "Consultation",
    })
    assert resp.status_code == 201
    ap = resp.get_json()["appointment"]
    assert ap["status"] == "pending"
    assert ap["patientName"] == "Paul Patient"

    slots = client.get(f"/api/doctors/{doctor['id']}/available-slots/2024-06-03").get_json()
    assert "09:30" not in slots
    assert slots[0] == "09:00"

    url = f"/api/appointments/{ap['id']}"
    resp = client.put(f"{url}/status", headers=doctor_h, json={"status": "confirmed"})
    assert resp.get_json()["appointment"]["status"] == "confirmed"

    resp = client.put(f"{url}/status", headers=doctor_h, json={"status": "completed"})
    assert resp.get_json()["appointment"]["status"] == "completed"

    resp = client.put(f"{url}/cancel", headers=patient_h, json={"reason": "Trop tard"})
    assert resp.status_code == 400
    assert client.get(url, headers=patient_h).get_json()["status"] == "completed"


# ── Auth ─────────────────────────────────────────────────────────────

def test_register_validation(client):
    assert client.post("/api/auth/register", json={"email": "x@example.com"}).status_code == 400
    resp = client.post("/api/auth/register", json={"name": "X", "email": "x@example.com", "password": "court"})
    assert resp.status_code == 400


def test_register_duplicate_email_is_409(client, patient):
    resp = client.post("/api/auth/register", json={
        "name": "Copie", "email": patient.email, "password": "motdepasse123",
    })
    assert resp.status_code == 409


def test_self_registration_cannot_pick_staff_role(client):
    resp = client.post("/api/auth/register", json={
        "name": "Pirate", "email": "pirate@example.com", "password": "motdepasse123", "role": "admin",
    })
    assert resp.status_code == 403


def test_login_failures(client, make_user):
    make_user(email="off@example.com", status="suspended")
    assert client.post("/api/auth/login", json={"email": "off@example.com", "password": "mauvais"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "off@example.com", "password": "motdepasse123"}).status_code == 403


def test_invalid_token_is_anonymous(client):
    resp = client.get("/api/auth/me", headers={"Authorization": "Bearer pas.un.jeton"})
    assert resp.status_code == 401


def test_suspended_user_token_is_rejected(client, db, patient, auth_headers):
    headers = auth_headers(patient)
    patient.status = "suspended"
    db.session.commit()
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_x_access_token_header(client, patient):
    from auth import generate_token
    resp = client.get("/api/auth/me", headers={"x-access-token": generate_token(patient)})
    assert resp.status_code == 200


# ── Rendez-vous ──────────────────────────────────────────────────────

def test_guest_booking_over_http(client, doctor):
    resp = client.post("/api/appointments", json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "Vaccin",
        "patientName": "Invitée", "patientEmail": "invitee@example.com",
        "patientPhone": "+33 6 98 76 54 32", "isGuestBooking": True,
    })
    assert resp.status_code == 201
    assert resp.get_json()["appointment"]["isGuestBooking"] is True


def test_http_conflict_is_409(client, doctor, patient, auth_headers):
    body = {"doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "Vaccin"}
    assert client.post("/api/appointments", json=body, headers=auth_headers(patient)).status_code == 201
    resp = client.post("/api/appointments", json=body, headers=auth_headers(patient))
    assert resp.status_code == 409
    assert resp.get_json()["success"] is False


def test_patient_cannot_book_for_someone_else(client, doctor, patient, make_user, auth_headers):
    other = make_user()
    resp = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x", "userId": other.id,
    })
    assert resp.status_code == 403


def test_patient_may_send_own_id_as_string(client, doctor, patient, auth_headers):
    resp = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x", "userId": str(patient.id),
    })
    assert resp.status_code == 201
    assert resp.get_json()["appointment"]["userId"] == patient.id


def test_doctor_scoped_view_grant(client, db, doctor, make_doctor, patient, make_user, auth_headers):
    assistant = make_user()
    perm = Permission.query.filter_by(name=P.APPOINTMENT_VIEW_ALL).one()
    db.session.add(UserPermission(user_id=assistant.id, permission_id=perm.id,
                                  resource_type="doctor", resource_id=str(doctor.id)))
    db.session.commit()
    ap = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    }).get_json()["appointment"]
    other = make_doctor(name="Dr Autre")

    headers = auth_headers(assistant)
    assert client.get(f"/api/appointments/{ap['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/appointments/doctor/{doctor.id}", headers=headers).status_code == 200
    assert client.get(f"/api/appointments/doctor/{other.id}", headers=headers).status_code == 403
    assert client.get("/api/appointments", headers=headers).status_code == 403


def test_appointment_scoped_update_grant(client, db, doctor, patient, make_user, auth_headers):
    helper = make_user()
    perm = Permission.query.filter_by(name=P.APPOINTMENT_UPDATE_ALL).one()
    mine = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    }).get_json()["appointment"]
    other = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:30", "reason": "x",
    }).get_json()["appointment"]
    db.session.add(UserPermission(user_id=helper.id, permission_id=perm.id,
                                  resource_type="appointment", resource_id=str(mine["id"])))
    db.session.commit()

    headers = auth_headers(helper)
    resp = client.put(f"/api/appointments/{mine['id']}/status", headers=headers, json={"status": "confirmed"})
    assert resp.status_code == 200
    resp = client.put(f"/api/appointments/{other['id']}/status", headers=headers, json={"status": "confirmed"})
    assert resp.status_code == 403


def test_doctor_scoped_manage_grant(client, db, doctor, make_doctor, make_user, auth_headers):
    assistant = make_user()
    perm = Permission.query.filter_by(name=P.DOCTOR_MANAGE).one()
    db.session.add(UserPermission(user_id=assistant.id, permission_id=perm.id,
                                  resource_type="doctor", resource_id=str(doctor.id)))
    db.session.commit()
    other = make_doctor(name="Dr Autre")
    body = {"dayOfWeek": "tuesday", "startTime": "14:00", "endTime": "16:00"}

    headers = auth_headers(assistant)
    assert client.post(f"/api/doctors/{doctor.id}/availability", headers=headers, json=body).status_code == 201
    assert client.post(f"/api/doctors/{other.id}/availability", headers=headers, json=body).status_code == 403


def test_patient_cannot_change_status(client, doctor, patient, auth_headers):
    headers = auth_headers(patient)
    ap = client.post("/api/appointments", headers=headers, json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    }).get_json()["appointment"]
    resp = client.put(f"/api/appointments/{ap['id']}/status", headers=headers, json={"status": "confirmed"})
    assert resp.status_code == 403


def test_patient_can_cancel_own_appointment(client, doctor, patient, auth_headers):
    headers = auth_headers(patient)
    ap = client.post("/api/appointments", headers=headers, json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    }).get_json()["appointment"]
    resp = client.put(f"/api/appointments/{ap['id']}/cancel", headers=headers, json={"reason": "Empêchement"})
    assert resp.status_code == 200
    body = resp.get_json()["appointment"]
    assert body["status"] == "canceled"
    assert body["canceledBy"] == patient.id


def test_other_patient_cannot_read_appointment(client, doctor, patient, make_user, auth_headers):
    ap = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    }).get_json()["appointment"]
    resp = client.get(f"/api/appointments/{ap['id']}", headers=auth_headers(make_user()))
    assert resp.status_code == 403


def test_manager_sees_doctor_appointments(client, db, doctor, patient, make_user, auth_headers):
    client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    })
    resp = client.get(f"/api/appointments/doctor/{doctor.id}?date=2024-06-03", headers=auth_headers(doctor.user))
    assert [a["time"] for a in resp.get_json()] == ["10:00"]

    other_doctor = make_user("doctor")
    resp = client.get(f"/api/appointments/doctor/{doctor.id}", headers=auth_headers(other_doctor))
    assert resp.status_code == 403


def test_admin_delete_appointment(client, doctor, patient, admin, auth_headers):
    ap = client.post("/api/appointments", headers=auth_headers(patient), json={
        "doctorId": doctor.id, "date": "2024-06-03", "time": "10:00", "reason": "x",
    }).get_json()["appointment"]
    assert client.delete(f"/api/appointments/{ap['id']}", headers=auth_headers(patient)).status_code == 403
    assert client.delete(f"/api/appointments/{ap['id']}", headers=auth_headers(admin)).status_code == 200
    assert Appointment.query.count() == 0


# ── Administration des permissions ───────────────────────────────────

def test_permission_crud(client, admin, auth_headers):
    headers = auth_headers(admin)
    resp = client.post("/api/permissions", headers=headers, json={"name": "report:export", "description": "Exporter"})
    assert resp.status_code == 201
    perm = resp.get_json()["permission"]
    assert perm["category"] == "general"

    dup = client.post("/api/permissions", headers=headers, json={"name": "report:export", "description": "x"})
    assert dup.status_code == 400

    listed = client.get("/api/permissions?category=general", headers=headers).get_json()
    assert [p["name"] for p in listed] == ["report:export"]

    resp = client.put(f"/api/permissions/{perm['id']}/deactivate", headers=headers)
    assert resp.get_json()["permission"]["isActive"] is False
    inactive = client.get("/api/permissions?active=false", headers=headers).get_json()
    assert [p["name"] for p in inactive] == ["report:export"]

    assert client.delete(f"/api/permissions/{perm['id']}", headers=headers).status_code == 200


def test_permission_in_use_cannot_be_deleted(client, admin, auth_headers):
    perm = Permission.query.filter_by(name=P.APPOINTMENT_CREATE).one()
    resp = client.delete(f"/api/permissions/{perm.id}", headers=auth_headers(admin))
    assert resp.status_code == 400
    assert "attribution" in resp.get_json()["message"]


def test_permission_admin_is_forbidden_to_patients(client, patient, auth_headers):
    assert client.get("/api/permissions", headers=auth_headers(patient)).status_code == 403


def test_role_permission_grant_and_revoke(client, admin, auth_headers):
    headers = auth_headers(admin)
    perm = Permission.query.filter_by(name=P.NOTIFICATION_CREATE).one()

    resp = client.post("/api/role-permissions", headers=headers, json={"role": "patient", "permissionId": perm.id})
    assert resp.status_code == 201
    dup = client.post("/api/role-permissions", headers=headers, json={"role": "patient", "permissionId": perm.id})
    assert dup.status_code == 400

    check = client.get(f"/api/role-permissions/check?role=patient&permission={P.NOTIFICATION_CREATE}", headers=headers)
    assert check.get_json()["granted"] is True

    assert client.delete(f"/api/role-permissions/patient/{perm.id}", headers=headers).status_code == 200
    check = client.get(f"/api/role-permissions/check?role=patient&permission={P.NOTIFICATION_CREATE}", headers=headers)
    assert check.get_json()["granted"] is False


def test_user_permission_denial_and_check(client, admin, patient, auth_headers):
    headers = auth_headers(admin)
    perm = Permission.query.filter_by(name=P.APPOINTMENT_CREATE).one()
    url = f"/api/user-permissions/check?userId={patient.id}&permission={P.APPOINTMENT_CREATE}"
    assert client.get(url, headers=headers).get_json()["granted"] is True

    resp = client.post("/api/user-permissions", headers=headers, json={
        "userId": patient.id, "permissionId": perm.id, "isGranted": False, "reason": "Abus",
    })
    assert resp.status_code == 201
    assert client.get(url, headers=headers).get_json()["granted"] is False

    up_id = resp.get_json()["userPermission"]["id"]
    assert client.put(f"/api/user-permissions/{up_id}/activate", headers=headers).status_code == 200
    assert client.get(url, headers=headers).get_json()["granted"] is True


def test_scoped_grant_and_denial_can_coexist(client, admin, patient, auth_headers):
    headers = auth_headers(admin)
    perm = Permission.query.filter_by(name=P.NOTIFICATION_CREATE).one()
    scope = {"userId": patient.id, "permissionId": perm.id, "resourceType": "doctor", "resourceId": 7}
    url = (f"/api/user-permissions/check?userId={patient.id}&permission={P.NOTIFICATION_CREATE}"
           "&resourceType=doctor&resourceId=7")

    grant = client.post("/api/user-permissions", headers=headers, json=scope)
    assert grant.status_code == 201
    assert client.get(url, headers=headers).get_json()["granted"] is True

    denial = client.post("/api/user-permissions", headers=headers, json={**scope, "isGranted": False})
    assert denial.status_code == 201
    assert client.get(url, headers=headers).get_json()["granted"] is False

    again = client.post("/api/user-permissions", headers=headers, json={**scope, "isGranted": False})
    assert again.status_code == 400
    grant_id = grant.get_json()["userPermission"]["id"]
    assert client.put(f"/api/user-permissions/{grant_id}/deactivate", headers=headers).status_code == 400


def test_user_permission_requires_existing_user(client, admin, auth_headers):
    perm = Permission.query.filter_by(name=P.APPOINTMENT_CREATE).one()
    resp = client.post("/api/user-permissions", headers=auth_headers(admin),
                       json={"userId": 9999, "permissionId": perm.id})
    assert resp.status_code == 404


# ── Divers ───────────────────────────────────────────────────────────

def test_specialties_are_public(client):
    resp = client.get("/api/specialties")
    assert resp.status_code == 200
    assert "Cardiologie" in [s["name"] for s in resp.get_json()]


def test_user_profile_access(client, patient, make_user, admin, auth_headers):
    other = make_user()
    assert client.get(f"/api/users/{patient.id}", headers=auth_headers(patient)).status_code == 200
    assert client.get(f"/api/users/{patient.id}", headers=auth_headers(other)).status_code == 403
    resp = client.put(f"/api/users/{patient.id}", headers=auth_headers(patient), json={"role": "admin"})
    assert resp.status_code == 403
    resp = client.put(f"/api/users/{patient.id}", headers=auth_headers(admin), json={"status": "inactive"})
    assert resp.get_json()["user"]["status"] == "inactive"


def test_unknown_route_is_json_404(client):
    resp = client.get("/api/nulle-part")
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False


def test_health(client):
    assert client.get("/api/health").get_json()["status"] == "ok"
