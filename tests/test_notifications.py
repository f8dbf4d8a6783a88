"""
Gabarits {{variable}}, dispatch par destinataire et effets post-commit.
"""

import pytest

import booking
import notifications
from models import Notification, NotificationTemplate

MONDAY = "2024-06-03"


# ── Substitution ─────────────────────────────────────────────────────

def test_text_without_placeholders_is_unchanged():
    text = "Votre rendez-vous est confirmé."
    assert notifications.render_template_vars(text, {"date": "03/06/2024"}) == text


def test_every_occurrence_is_replaced():
    out = notifications.render_template_vars("{{name}} / {{ name }}", {"name": "Alice"})
    assert out == "Alice / Alice"


def test_unknown_placeholder_is_kept():
    out = notifications.render_template_vars("Bonjour {{name}}, RDV {{date}}", {"name": "Alice"})
    assert out == "Bonjour Alice, RDV {{date}}"


def test_none_value_is_kept_as_placeholder():
    assert notifications.render_template_vars("{{x}}", {"x": None}) == "{{x}}"


def test_empty_text():
    assert notifications.render_template_vars(None, {"x": 1}) == ""


# ── Dispatch ─────────────────────────────────────────────────────────

def test_dispatch_creates_one_row_per_recipient(db, make_user):
    a, b = make_user(), make_user()
    created = notifications.dispatch(
        notifications.TPL_ABSENCE_REJECTED, [a.id, b.id, a.id, None],
        {"startDate": "01/03/2024", "endDate": "05/03/2024", "reason": "Congés"},
        related_entity_type="doctorAbsence", related_entity_id=4,
    )
    db.session.commit()
    assert len(created) == 2
    notif = Notification.query.filter_by(user_id=a.id).one()
    assert notif.content == "Votre absence du 01/03/2024 au 05/03/2024 (Congés) a été refusée."
    assert notif.related_entity_type == "doctorAbsence"
    assert notif.meta["template"] == notifications.TPL_ABSENCE_REJECTED


def test_missing_template_creates_nothing(db, patient):
    assert notifications.dispatch("inexistant", [patient.id], {}) == []
    assert Notification.query.count() == 0


def test_inactive_template_creates_nothing(db, patient):
    tpl = NotificationTemplate.query.filter_by(name=notifications.TPL_ABSENCE_REJECTED).one()
    tpl.is_active = False
    db.session.commit()
    assert notifications.dispatch(notifications.TPL_ABSENCE_REJECTED, [patient.id], {}) == []


def test_email_channel_marks_delivery_failed_when_smtp_disabled(db, patient):
    created = notifications.dispatch(notifications.TPL_ABSENCE_REJECTED, [patient.id], {}, channel="email")
    assert created[0].delivery_status == "failed"


def test_guest_receives_email_only(db, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, "send_email", lambda email, subject, body, html=None: sent.append(email))
    created = notifications.dispatch(notifications.TPL_ABSENCE_REJECTED, [], {}, guest_emails=["g@example.com"])
    assert created == []
    assert sent == ["g@example.com"]


# ── Post-commit ──────────────────────────────────────────────────────

def test_booking_notifies_patient_and_doctor(doctor, patient):
    ap = booking.create_appointment({"doctorId": doctor.id, "date": MONDAY, "time": "09:30",
                                     "reason": "Bilan", "userId": patient.id})
    rows = Notification.query.filter_by(related_entity_type="appointment", related_entity_id=ap.id).all()
    assert {r.user_id for r in rows} == {patient.id, doctor.user_id}
    to_patient = next(r for r in rows if r.user_id == patient.id)
    assert "03/06/2024" in to_patient.content
    assert "Dr Martin" in to_patient.content


def test_failing_notification_does_not_fail_booking(monkeypatch, doctor, patient):
    def boom(*args, **kwargs):
        raise RuntimeError("SMTP en panne")

    monkeypatch.setattr(booking, "_notify_patient", boom)
    ap = booking.create_appointment({"doctorId": doctor.id, "date": MONDAY, "time": "09:30",
                                     "reason": "Bilan", "userId": patient.id})
    assert ap.id is not None
    assert booking.get_appointment_or_404(ap.id).status == "pending"
    # l'effet suivant (médecin) s'exécute quand même
    assert Notification.query.filter_by(user_id=doctor.user_id).count() == 1


def test_hooks_are_dropped_on_rollback(db):
    calls = []
    Notification.query.count()  # transaction ouverte, comme pendant une opération
    notifications.after_commit(calls.append, "x")
    db.session.rollback()
    notifications.commit()
    assert calls == []


def test_hooks_run_after_commit(db):
    calls = []
    notifications.after_commit(calls.append, "x")
    assert calls == []
    notifications.commit()
    assert calls == ["x"]


def test_status_change_notifies_patient(doctor, patient):
    ap = booking.create_appointment({"doctorId": doctor.id, "date": MONDAY, "time": "09:30",
                                     "reason": "Bilan", "userId": patient.id})
    booking.update_status(ap.id, "confirmed")
    titles = [n.title for n in Notification.query.filter_by(user_id=patient.id).all()]
    assert "Votre RDV du 03/06/2024 est confirmé" in titles


@pytest.mark.parametrize("path", ["/api/notifications", "/api/notifications/unread-count"])
def test_inbox_requires_authentication(client, path):
    assert client.get(path).status_code == 401


def test_inbox_read_and_soft_delete(client, doctor, patient, auth_headers):
    booking.create_appointment({"doctorId": doctor.id, "date": MONDAY, "time": "09:30",
                                "reason": "Bilan", "userId": patient.id})
    headers = auth_headers(patient)

    inbox = client.get("/api/notifications", headers=headers).get_json()
    assert len(inbox) == 1
    assert client.get("/api/notifications/unread-count", headers=headers).get_json() == {"count": 1}

    notif_id = inbox[0]["id"]
    assert client.put(f"/api/notifications/{notif_id}/read", headers=headers).get_json()["notification"]["isRead"]
    assert client.get("/api/notifications/unread-count", headers=headers).get_json() == {"count": 0}

    assert client.delete(f"/api/notifications/{notif_id}", headers=headers).status_code == 200
    assert client.get("/api/notifications", headers=headers).get_json() == []
    assert client.get(f"/api/notifications/{notif_id}", headers=headers).status_code == 404


def test_other_users_inbox_is_forbidden(client, make_user, patient, auth_headers):
    other = make_user()
    resp = client.get(f"/api/notifications/user/{patient.id}", headers=auth_headers(other))
    assert resp.status_code == 403


def test_create_from_template_endpoint(client, admin, patient, auth_headers):
    resp = client.post("/api/notifications/from-template", headers=auth_headers(admin), json={
        "templateName": notifications.TPL_ABSENCE_APPROVED,
        "userId": patient.id,
        "variables": {"startDate": "01/07/2024", "endDate": "02/07/2024", "reason": "Congrès"},
    })
    assert resp.status_code == 201
    assert resp.get_json()["notifications"][0]["title"] == "Absence validée"


def test_template_crud_and_deactivation(client, admin, auth_headers):
    headers = auth_headers(admin)
    resp = client.post("/api/notification-templates", headers=headers, json={
        "name": "rappel", "subject": "Rappel {{date}}", "content": "RDV demain", "type": "reminder",
    })
    assert resp.status_code == 201
    tpl_id = resp.get_json()["template"]["id"]

    dup = client.post("/api/notification-templates", headers=headers, json={
        "name": "rappel", "subject": "x", "content": "y", "type": "reminder",
    })
    assert dup.status_code == 400

    resp = client.put(f"/api/notification-templates/{tpl_id}/deactivate", headers=headers)
    assert resp.get_json()["template"]["isActive"] is False
    assert notifications.find_template("rappel") is None
