# medical_records.py — Blueprint dossiers médicaux (un dossier par patient, historique de consultations)
from flask import Blueprint, current_app, g, jsonify, request
from flask_login import login_required

from booking import get_appointment_or_404
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import db, Doctor, MedicalDossier, MedicalHistoryEntry, User
from permissions import (
    can_access_medical_dossier, can_manage_medical_dossier, roles_required,
)
from scheduling import parse_date

dossiers_bp = Blueprint("medical_dossiers", __name__)

ENTRY_TEXT_FIELDS = ("notes", "diagnosis", "treatment", "prescriptions")


def _dossier_or_404(dossier_id: int) -> MedicalDossier:
    dossier = db.session.get(MedicalDossier, dossier_id)
    if dossier is None:
        raise NotFoundError("Dossier médical introuvable")
    return dossier


def _ensure_can_see(patient_id):
    if not can_access_medical_dossier(g.user_id, patient_id, g.user_role):
        raise AuthorizationError("Accès refusé à ce dossier médical")


def _ensure_can_manage():
    if not can_manage_medical_dossier(g.user_role):
        raise AuthorizationError("Seul le personnel médical peut modifier un dossier")


# ======================
# Dossiers
# ======================
@dossiers_bp.route("", methods=["GET"])
@login_required
@roles_required("responsable", "admin")
def list_dossiers():
    rows = MedicalDossier.query.order_by(MedicalDossier.patient_name).all()
    return jsonify([d.to_dict() for d in rows])


@dossiers_bp.route("/<int:dossier_id>", methods=["GET"])
@login_required
def get_dossier(dossier_id):
    dossier = _dossier_or_404(dossier_id)
    _ensure_can_see(dossier.patient_id)
    return jsonify(dossier.to_dict(with_entries=True))


@dossiers_bp.route("/patient/<int:patient_id>", methods=["GET"])
@login_required
def dossier_by_patient(patient_id):
    _ensure_can_see(patient_id)
    dossier = MedicalDossier.query.filter_by(patient_id=patient_id).first()
    if dossier is None:
        raise NotFoundError("Aucun dossier médical pour ce patient")
    return jsonify(dossier.to_dict(with_entries=True))


@dossiers_bp.route("", methods=["POST"])
@login_required
def create_dossier():
    _ensure_can_manage()
    data = request.get_json(silent=True) or {}
    patient = db.session.get(User, data.get("patientId")) if data.get("patientId") else None
    if patient is None:
        raise NotFoundError("Patient introuvable")
    if MedicalDossier.query.filter_by(patient_id=patient.id).first():
        raise ConflictError("Ce patient a déjà un dossier médical")
    dossier = MedicalDossier(patient_id=patient.id, patient_name=data.get("patientName") or patient.name)
    db.session.add(dossier)
    db.session.commit()
    current_app.logger.info("[DOSSIER] créé id=%s patient=%s", dossier.id, patient.id)
    return jsonify({"success": True, "dossier": dossier.to_dict()}), 201


# ======================
# Historique
# ======================
@dossiers_bp.route("/<int:dossier_id>/history", methods=["POST"])
@login_required
def add_history_entry(dossier_id):
    _ensure_can_manage()
    dossier = _dossier_or_404(dossier_id)
    data = request.get_json(silent=True) or {}
    if not data.get("date"):
        raise ValidationError("date est requise")
    day = parse_date(data["date"], "date")

    appointment_id = data.get("appointmentId")
    doctor_id = data.get("doctorId")
    if appointment_id is not None:
        ap = get_appointment_or_404(appointment_id)
        if ap.user_id is not None and ap.user_id != dossier.patient_id:
            raise ValidationError("Ce rendez-vous ne concerne pas le patient du dossier")
        doctor_id = doctor_id or ap.doctor_id
    doctor = db.session.get(Doctor, doctor_id) if doctor_id else None
    if doctor_id and doctor is None:
        raise NotFoundError(f"Médecin id={doctor_id} introuvable")

    entry = MedicalHistoryEntry(
        dossier_id=dossier.id,
        appointment_id=appointment_id,
        date=day,
        doctor_id=doctor.id if doctor else None,
        doctor_name=data.get("doctorName") or (doctor.name if doctor else None),
        **{f: data.get(f) for f in ENTRY_TEXT_FIELDS},
    )
    db.session.add(entry)
    db.session.commit()
    return jsonify({"success": True, "entry": entry.to_dict()}), 201


def _entry_or_404(entry_id: int) -> MedicalHistoryEntry:
    entry = db.session.get(MedicalHistoryEntry, entry_id)
    if entry is None:
        raise NotFoundError("Entrée d'historique introuvable")
    return entry


@dossiers_bp.route("/history/<int:entry_id>", methods=["GET"])
@login_required
def get_history_entry(entry_id):
    entry = _entry_or_404(entry_id)
    _ensure_can_see(entry.dossier.patient_id)
    return jsonify(entry.to_dict())


@dossiers_bp.route("/history/<int:entry_id>", methods=["PUT"])
@login_required
def update_history_entry(entry_id):
    _ensure_can_manage()
    entry = _entry_or_404(entry_id)
    data = request.get_json(silent=True) or {}
    if data.get("date"):
        entry.date = parse_date(data["date"], "date")
    for f in ENTRY_TEXT_FIELDS:
        if f in data:
            setattr(entry, f, data[f])
    db.session.commit()
    return jsonify({"success": True, "entry": entry.to_dict()})


# ======================
# Vue par rendez-vous
# ======================
@dossiers_bp.route("/appointment/<int:appointment_id>/notes", methods=["GET"])
@login_required
def notes_for_appointment(appointment_id):
    ap = get_appointment_or_404(appointment_id)
    _ensure_can_see(ap.user_id)
    entries = MedicalHistoryEntry.query.filter_by(appointment_id=ap.id).order_by(MedicalHistoryEntry.id).all()
    return jsonify([e.to_dict() for e in entries])


@dossiers_bp.route("/appointment/<int:appointment_id>", methods=["GET"])
@login_required
def dossier_for_appointment(appointment_id):
    ap = get_appointment_or_404(appointment_id)
    _ensure_can_see(ap.user_id)
    dossier = MedicalDossier.query.filter_by(patient_id=ap.user_id).first() if ap.user_id else None
    if dossier is None:
        return jsonify({"exists": False, "dossier": None})
    return jsonify({"exists": True, "dossier": dossier.to_dict(with_entries=True)})
