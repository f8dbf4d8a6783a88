# booking.py — prise de rendez-vous, transitions de statut, annulation
from __future__ import annotations

import re

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

import notifications
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    db, APPOINTMENT_STATUSES, Appointment, Doctor, User,
)
from scheduling import get_doctor_or_404, parse_date, parse_time

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")
PHONE_RE = re.compile(r"^\+?[0-9][0-9\s\-().]{6,19}$")

# Statuts qui libèrent le créneau
NON_BLOCKING_STATUSES = ("canceled", "rejected", "no-show")

STATUS_LABELS = {
    "pending": "en attente",
    "confirmed": "confirmé",
    "canceled": "annulé",
    "completed": "terminé",
    "no-show": "absence du patient",
}

GUEST_FIELDS = ("patientName", "patientEmail", "patientPhone")


def get_appointment_or_404(appointment_id) -> Appointment:
    ap = db.session.get(Appointment, appointment_id)
    if ap is None:
        raise NotFoundError(f"Rendez-vous id={appointment_id} introuvable")
    return ap


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _validate_guest(payload: dict) -> tuple[str, str, str]:
    missing = [f for f in GUEST_FIELDS if _blank(payload.get(f))]
    if missing:
        raise ValidationError(f"Réservation invité : champs requis manquants ({', '.join(missing)})")
    name = payload["patientName"].strip()
    email = payload["patientEmail"].strip()
    phone = payload["patientPhone"].strip()
    if not EMAIL_RE.match(email):
        raise ValidationError("Adresse e-mail invalide")
    if not PHONE_RE.match(phone):
        raise ValidationError("Numéro de téléphone invalide")
    return name, email, phone


def _parse_duration(value) -> int:
    if value is None:
        return 30
    try:
        duration = int(value)
    except (TypeError, ValueError):
        raise ValidationError("duration doit être un nombre de minutes")
    if duration <= 0:
        raise ValidationError("duration doit être positive")
    return duration


def find_conflict(doctor_id: int, day, time: str, exclude_id: int | None = None) -> Appointment | None:
    q = Appointment.query.filter(
        Appointment.doctor_id == doctor_id,
        Appointment.date == day,
        Appointment.time == time,
        Appointment.status.notin_(NON_BLOCKING_STATUSES),
    )
    if exclude_id is not None:
        q = q.filter(Appointment.id != exclude_id)
    return q.first()


def _appointment_vars(ap: Appointment, **extra) -> dict:
    data = {
        "patientName": ap.display_patient_name,
        "doctorName": ap.doctor.name if ap.doctor else "",
        "date": ap.date.strftime("%d/%m/%Y"),
        "time": ap.time,
        "reason": ap.reason,
        "status": STATUS_LABELS.get(ap.status, ap.status),
        "brand": current_app.config.get("BRAND_NAME", "MediRDV"),
    }
    data.update(extra)
    return data


def _notify_patient(appointment_id: int, template_name: str, **extra) -> None:
    ap = db.session.get(Appointment, appointment_id)
    notifications.dispatch(
        template_name,
        [ap.user_id] if ap.user_id else [],
        _appointment_vars(ap, **extra),
        related_entity_type="appointment", related_entity_id=ap.id,
        guest_emails=[ap.patient_email] if ap.is_guest_booking else (),
    )


def _notify_doctor(appointment_id: int, template_name: str, **extra) -> None:
    ap = db.session.get(Appointment, appointment_id)
    notifications.dispatch(
        template_name, [ap.doctor.user_id], _appointment_vars(ap, **extra),
        related_entity_type="appointment", related_entity_id=ap.id,
    )


def _commit_or_conflict(ap: Appointment, flush_only: bool = False) -> None:
    try:
        if flush_only:
            db.session.flush()
        else:
            notifications.commit()
    except IntegrityError:
        current_app.logger.warning("[RDV] créneau déjà pris doctor=%s %s %s", ap.doctor_id, ap.date, ap.time)
        db.session.rollback()
        raise ConflictError("Ce créneau est déjà réservé")


# ======================
# Création
# ======================
def create_appointment(payload: dict) -> Appointment:
    """Valide puis enregistre un RDV `pending` (patient inscrit XOR invité).

    Ordre des contrôles : champs requis, date, heure, médecin, utilisateur, invité,
    identité patient, puis conflit de créneau.
    """
    missing = [f for f in ("doctorId", "date", "time", "reason") if _blank(payload.get(f))]
    if missing:
        raise ValidationError(f"Champs requis manquants : {', '.join(missing)}")
    day = parse_date(payload["date"])
    time = parse_time(payload["time"])
    doctor = get_doctor_or_404(payload["doctorId"])

    user_id = payload.get("userId")
    if user_id is not None:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            raise ValidationError(f"userId invalide : {user_id}")
        if db.session.get(User, user_id) is None:
            raise NotFoundError(f"Utilisateur id={user_id} introuvable")

    has_guest_fields = any(not _blank(payload.get(f)) for f in GUEST_FIELDS)
    is_guest = bool(payload.get("isGuestBooking")) or has_guest_fields
    if user_id is not None and is_guest:
        raise ValidationError("Un RDV est soit lié à un compte patient, soit une réservation invité, pas les deux")
    guest = _validate_guest(payload) if is_guest else None
    if user_id is None and guest is None:
        raise ValidationError("Identité du patient requise : userId ou patientName/patientEmail/patientPhone")

    duration = _parse_duration(payload.get("duration"))

    clash = find_conflict(doctor.id, day, time)
    if clash is not None:
        raise ConflictError(f"Le créneau {day.isoformat()} {time} est déjà réservé")

    ap = Appointment(
        doctor_id=doctor.id,
        date=day,
        time=time,
        duration=duration,
        status="pending",
        reason=str(payload["reason"]).strip(),
        user_id=user_id,
        is_guest_booking=guest is not None,
        notes=payload.get("notes"),
    )
    if guest is not None:
        ap.patient_name, ap.patient_email, ap.patient_phone = guest
    db.session.add(ap)
    _commit_or_conflict(ap, flush_only=True)

    notifications.after_commit(_notify_patient, ap.id, notifications.TPL_APPOINTMENT_CREATED)
    notifications.after_commit(_notify_doctor, ap.id, notifications.TPL_APPOINTMENT_CREATED_DOCTOR)
    _commit_or_conflict(ap)

    current_app.logger.info("[RDV] créé id=%s doctor=%s %s %s (%s)", ap.id, ap.doctor_id, ap.date, ap.time,
                            "invité" if ap.is_guest_booking else f"user={ap.user_id}")
    return ap


# ======================
# Statut
# ======================
def update_status(appointment_id, status, notes=None) -> Appointment:
    ap = get_appointment_or_404(appointment_id)
    if status not in APPOINTMENT_STATUSES:
        raise ValidationError(f"Statut invalide : {status}")

    if ap.is_terminal:
        if status == ap.status == "completed":
            return ap
        raise ValidationError(
            f"Rendez-vous {STATUS_LABELS[ap.status]} : aucun changement de statut n'est possible"
        )

    previous = ap.status
    ap.status = status
    if notes is not None:
        ap.notes = notes

    if previous != status:
        notifications.after_commit(
            _notify_patient, ap.id, notifications.TPL_APPOINTMENT_STATUS_CHANGED,
            previousStatus=STATUS_LABELS.get(previous, previous),
        )
    _commit_or_conflict(ap)
    current_app.logger.info("[RDV] id=%s %s → %s", ap.id, previous, status)
    return ap


def cancel_appointment(appointment_id, reason: str | None = None, canceled_by: int | None = None) -> Appointment:
    ap = get_appointment_or_404(appointment_id)
    if ap.status == "canceled":
        return ap
    if ap.status == "completed":
        raise ValidationError("Rendez-vous terminé : annulation impossible")

    ap.status = "canceled"
    ap.canceled_by = canceled_by
    if reason:
        ap.cancel_reason = reason
        block = f"Cancellation reason: {reason}"
        ap.notes = f"{ap.notes}\n\n{block}" if ap.notes else block

    notifications.after_commit(_notify_patient, ap.id, notifications.TPL_APPOINTMENT_CANCELED)
    notifications.after_commit(_notify_doctor, ap.id, notifications.TPL_APPOINTMENT_CANCELED)
    notifications.commit()
    current_app.logger.info("[RDV] annulé id=%s par user=%s", ap.id, canceled_by)
    return ap


# ======================
# Administration
# ======================
def update_appointment(appointment_id, payload: dict) -> Appointment:
    """Modification admin des champs hors statut (date, heure, motif, notes, durée)."""
    ap = get_appointment_or_404(appointment_id)
    if "status" in payload:
        raise ValidationError("Utiliser PUT /api/appointments/<id>/status pour changer le statut")

    day = parse_date(payload["date"]) if "date" in payload else ap.date
    time = parse_time(payload["time"]) if "time" in payload else ap.time
    if (day, time) != (ap.date, ap.time) and find_conflict(ap.doctor_id, day, time, exclude_id=ap.id):
        raise ConflictError(f"Le créneau {day.isoformat()} {time} est déjà réservé")

    ap.date, ap.time = day, time
    if "reason" in payload:
        if _blank(payload["reason"]):
            raise ValidationError("reason ne peut pas être vide")
        ap.reason = payload["reason"].strip()
    if "notes" in payload:
        ap.notes = payload["notes"]
    if "duration" in payload:
        ap.duration = _parse_duration(payload["duration"])
    _commit_or_conflict(ap)
    return ap


def delete_appointment(appointment_id) -> None:
    ap = get_appointment_or_404(appointment_id)
    db.session.delete(ap)
    db.session.commit()


def _with_parties(q):
    return q.options(
        joinedload(Appointment.doctor).joinedload(Doctor.specialty),
        joinedload(Appointment.user),
    )


def list_appointments(status: str | None = None) -> list[Appointment]:
    q = _with_parties(Appointment.query)
    if status:
        q = q.filter(Appointment.status == status)
    return q.order_by(Appointment.date.desc(), Appointment.time.desc()).all()


def appointments_for_doctor(doctor_id: int, day=None) -> list[Appointment]:
    q = _with_parties(Appointment.query).filter(Appointment.doctor_id == doctor_id)
    if day is not None:
        q = q.filter(Appointment.date == parse_date(day))
    return q.order_by(Appointment.date, Appointment.time).all()


def appointments_for_user(user_id: int) -> list[Appointment]:
    q = _with_parties(Appointment.query).filter(Appointment.user_id == user_id)
    return q.order_by(Appointment.date.desc(), Appointment.time.desc()).all()
