# scheduling.py — disponibilités hebdomadaires, absences et créneaux libres des médecins
from __future__ import annotations

import re
from datetime import date, datetime

from flask import current_app
from sqlalchemy import and_

import notifications
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from permissions import DOCTOR_APPROVE_ABSENCES
from models import (
    db, ABSENCE_STATUSES, ACTIVE_APPOINTMENT_STATUSES, DAYS_OF_WEEK,
    Appointment, Doctor, DoctorAbsence, DoctorAvailability, User,
)

SLOT_MINUTES = 30
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


# ======================
# Parsing
# ======================
def parse_date(value, field: str = "date") -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not DATE_RE.match(value):
        raise ValidationError(f"Format de {field} invalide (attendu AAAA-MM-JJ)")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Date invalide : {value}")


def parse_time(value, field: str = "time") -> str:
    if not isinstance(value, str) or not TIME_RE.match(value):
        raise ValidationError(f"Format de {field} invalide (attendu HH:MM)")
    return value


def day_name(d: date) -> str:
    # 0 = dimanche, comme l'index des jours côté client
    return DAYS_OF_WEEK[(d.weekday() + 1) % 7]


def _minutes(hhmm: str) -> int:
    h, m = hhmm.split(":")
    return int(h) * 60 + int(m)


def _hhmm(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def generate_slots(start_time: str, end_time: str, step: int = SLOT_MINUTES) -> list[str]:
    """Créneaux [start, end) par pas fixe; un créneau qui commencerait à end est exclu."""
    cur, end = _minutes(start_time), _minutes(end_time)
    slots = []
    while cur < end:
        slots.append(_hhmm(cur))
        cur += step
    return slots


def get_doctor_or_404(doctor_id) -> Doctor:
    doctor = db.session.get(Doctor, doctor_id)
    if doctor is None:
        raise NotFoundError(f"Médecin id={doctor_id} introuvable")
    return doctor


# ======================
# Créneaux libres
# ======================
def absence_on(doctor_id: int, day: date) -> DoctorAbsence | None:
    return DoctorAbsence.query.filter(
        DoctorAbsence.doctor_id == doctor_id,
        DoctorAbsence.start_date <= day,
        DoctorAbsence.end_date >= day,
    ).first()


def get_available_time_slots(doctor_id: int, day) -> list[str]:
    day = parse_date(day)
    availability = DoctorAvailability.query.filter_by(
        doctor_id=doctor_id, day_of_week=day_name(day)
    ).first()
    if availability is None:
        return []
    if absence_on(doctor_id, day) is not None:
        return []

    taken = {
        t for (t,) in db.session.query(Appointment.time).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.date == day,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        )
    }
    return [s for s in generate_slots(availability.start_time, availability.end_time) if s not in taken]


# ======================
# Disponibilités hebdomadaires
# ======================
def list_availability(doctor_id: int) -> list[DoctorAvailability]:
    rows = DoctorAvailability.query.filter_by(doctor_id=doctor_id).all()
    return sorted(rows, key=lambda a: DAYS_OF_WEEK.index(a.day_of_week))


def set_availability(doctor_id: int, payload: dict) -> tuple[DoctorAvailability, bool]:
    """Crée ou remplace la plage du jour. Renvoie (ligne, créée?)."""
    get_doctor_or_404(doctor_id)
    day = (payload.get("dayOfWeek") or "").strip().lower()
    if day not in DAYS_OF_WEEK:
        raise ValidationError("dayOfWeek invalide (monday … sunday)")
    start = parse_time(payload.get("startTime"), "startTime")
    end = parse_time(payload.get("endTime"), "endTime")
    if _minutes(start) >= _minutes(end):
        raise ValidationError("startTime doit précéder endTime")

    row = DoctorAvailability.query.filter_by(doctor_id=doctor_id, day_of_week=day).first()
    created = row is None
    if created:
        row = DoctorAvailability(doctor_id=doctor_id, day_of_week=day)
        db.session.add(row)
    row.start_time, row.end_time = start, end
    db.session.commit()
    current_app.logger.info("[AGENDA] doctor=%s %s %s-%s (%s)", doctor_id, day, start, end,
                            "créée" if created else "mise à jour")
    return row, created


def remove_availability(doctor_id: int, day: str) -> None:
    row = DoctorAvailability.query.filter_by(doctor_id=doctor_id, day_of_week=(day or "").lower()).first()
    if row is None:
        raise NotFoundError("Disponibilité introuvable pour ce jour")
    db.session.delete(row)
    db.session.commit()


# ======================
# Absences
# ======================
def find_overlapping_absence(doctor_id: int, start: date, end: date, exclude_id: int | None = None):
    q = DoctorAbsence.query.filter(
        DoctorAbsence.doctor_id == doctor_id,
        DoctorAbsence.status.in_(("pending", "approved")),
        # bornes incluses : couvre les chevauchements partiels et les absences englobantes
        and_(DoctorAbsence.start_date <= end, DoctorAbsence.end_date >= start),
    )
    if exclude_id is not None:
        q = q.filter(DoctorAbsence.id != exclude_id)
    return q.first()


def create_absence(doctor_id: int, payload: dict) -> DoctorAbsence:
    for f in ("startDate", "endDate", "reason"):
        if not payload.get(f):
            raise ValidationError(f"Champ requis manquant : {f}")
    start = parse_date(payload["startDate"], "startDate")
    end = parse_date(payload["endDate"], "endDate")
    if start > end:
        raise ValidationError("startDate doit être antérieure ou égale à endDate")
    get_doctor_or_404(doctor_id)

    clash = find_overlapping_absence(doctor_id, start, end)
    if clash is not None:
        raise ConflictError(
            f"Chevauchement avec l'absence du {clash.start_date.isoformat()} au {clash.end_date.isoformat()}"
        )

    absence = DoctorAbsence(
        doctor_id=doctor_id, start_date=start, end_date=end,
        reason=str(payload["reason"]).strip(), status="pending",
        meta={"status_history": [], "notified_patients": 0},
    )
    db.session.add(absence)
    db.session.commit()
    current_app.logger.info("[ABSENCE] créée id=%s doctor=%s %s..%s", absence.id, doctor_id, start, end)
    return absence


def remove_absence(doctor_id: int, absence_id: int) -> None:
    absence = DoctorAbsence.query.filter_by(id=absence_id, doctor_id=doctor_id).first()
    if absence is None:
        raise NotFoundError("Absence introuvable")
    db.session.delete(absence)
    db.session.commit()


def _absence_vars(absence: DoctorAbsence, **extra) -> dict:
    doctor = absence.doctor
    data = {
        "doctorName": doctor.name if doctor else "",
        "startDate": absence.start_date.strftime("%d/%m/%Y"),
        "endDate": absence.end_date.strftime("%d/%m/%Y"),
        "reason": absence.reason,
        "brand": current_app.config.get("BRAND_NAME", "MediRDV"),
    }
    data.update(extra)
    return data


def _notify_patients_of_absence(absence_id: int) -> None:
    absence = db.session.get(DoctorAbsence, absence_id)
    affected = Appointment.query.filter(
        Appointment.doctor_id == absence.doctor_id,
        Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        Appointment.date >= absence.start_date,
        Appointment.date <= absence.end_date,
    ).order_by(Appointment.date, Appointment.time).all()

    notified = 0
    for ap in affected:
        variables = _absence_vars(
            absence, patientName=ap.display_patient_name,
            appointmentDate=ap.date.strftime("%d/%m/%Y"), appointmentTime=ap.time,
        )
        notifications.dispatch(
            notifications.TPL_ABSENCE_APPROVED_PATIENT,
            [ap.user_id] if ap.user_id else [],
            variables,
            related_entity_type="appointment", related_entity_id=ap.id,
            guest_emails=[ap.patient_email] if ap.is_guest_booking else (),
        )
        notified += 1

    absence.notified_patients = notified
    current_app.logger.info("[ABSENCE] id=%s : %d patient(s) prévenu(s)", absence.id, notified)


def _notify_doctor_of_review(absence_id: int, template_name: str) -> None:
    absence = db.session.get(DoctorAbsence, absence_id)
    notifications.dispatch(
        template_name, [absence.doctor.user_id], _absence_vars(absence),
        related_entity_type="doctorAbsence", related_entity_id=absence.id,
    )


def update_absence_status(doctor_id: int, absence_id: int, status: str, reviewer: User,
                          permissions=None, notes: str | None = None) -> DoctorAbsence:
    """Valide ou refuse une absence.

    Approbation : historique de statut, notification des patients ayant un RDV actif
    sur la période (compteur dans metadata) puis du médecin. Refus : médecin seulement.
    """
    absence = DoctorAbsence.query.filter_by(id=absence_id, doctor_id=doctor_id).first()
    if absence is None:
        raise NotFoundError(f"Absence id={absence_id} introuvable")
    if status not in ("approved", "rejected"):
        raise ValidationError(f"Statut invalide (attendu : approved ou rejected, parmi {', '.join(ABSENCE_STATUSES)})")
    if status == absence.status:
        raise ValidationError(f"L'absence est déjà au statut {status}")

    allowed = reviewer.is_admin or (
        permissions is not None and permissions.allows(DOCTOR_APPROVE_ABSENCES, "doctor", doctor_id)
    )
    if not allowed:
        raise AuthorizationError("Validation des absences réservée aux administrateurs")

    now = datetime.utcnow()
    absence.append_status_history({
        "from": absence.status,
        "to": status,
        "by": reviewer.id,
        "at": now.isoformat(),
        "notes": notes,
    })
    absence.status = status
    absence.reviewed_by = reviewer.id
    absence.reviewed_at = now

    if status == "approved":
        notifications.after_commit(_notify_patients_of_absence, absence.id)
        notifications.after_commit(_notify_doctor_of_review, absence.id, notifications.TPL_ABSENCE_APPROVED)
    else:
        notifications.after_commit(_notify_doctor_of_review, absence.id, notifications.TPL_ABSENCE_REJECTED)
    notifications.commit()

    current_app.logger.info("[ABSENCE] id=%s → %s par user=%s", absence.id, status, reviewer.id)
    return absence
