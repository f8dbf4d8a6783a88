# pro_office.py — Blueprint médecins : profils, agenda hebdomadaire, absences, créneaux libres
from flask import Blueprint, current_app, g, jsonify, request
from flask_login import current_user, login_required

import scheduling
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import db, Doctor, DoctorAbsence, DoctorManager, Specialty, User
from permissions import (
    DOCTOR_CREATE, DOCTOR_DELETE, DOCTOR_MANAGE, DOCTOR_UPDATE_ALL,
    can_manage_doctor, has_permission, require_permission,
)

doctors_bp = Blueprint("doctors", __name__)

DOCTOR_FIELDS = {
    "bio": "bio",
    "experience": "experience",
    "yearsOfExperience": "years_of_experience",
    "officeAddress": "office_address",
    "officeHours": "office_hours",
    "acceptingNewPatients": "accepting_new_patients",
    "isActive": "is_active",
}


def _ensure_can_manage(doctor_id: int):
    if can_manage_doctor(g.user_id, doctor_id, g.user_role) or has_permission(DOCTOR_MANAGE, "doctor", doctor_id):
        return
    raise AuthorizationError("Accès refusé : vous ne gérez pas ce médecin")


def _apply_doctor_fields(doctor: Doctor, data: dict):
    for key, attr in DOCTOR_FIELDS.items():
        if key in data:
            setattr(doctor, attr, data[key])
    if "languages" in data:
        langs = data["languages"]
        # accepte "fr, ar" comme ["fr", "ar"]
        if isinstance(langs, str):
            langs = [x.strip() for x in langs.split(",")]
        if not isinstance(langs, list):
            raise ValidationError("languages doit être une liste")
        doctor.languages = [str(x).strip() for x in langs if str(x).strip()]
    if "specialtyId" in data:
        sid = data["specialtyId"]
        if sid is not None and db.session.get(Specialty, sid) is None:
            raise NotFoundError(f"Spécialité id={sid} introuvable")
        doctor.specialty_id = sid


# === Profils ===
@doctors_bp.route("", methods=["GET"])
def list_doctors():
    q = Doctor.query.filter(Doctor.is_active.is_(True))
    specialty_id = request.args.get("specialtyId", type=int)
    if specialty_id:
        q = q.filter(Doctor.specialty_id == specialty_id)
    return jsonify([d.to_dict() for d in q.order_by(Doctor.id).all()])


@doctors_bp.route("/<int:doctor_id>", methods=["GET"])
def get_doctor(doctor_id):
    return jsonify(scheduling.get_doctor_or_404(doctor_id).to_dict())


@doctors_bp.route("/specialty/<int:specialty_id>", methods=["GET"])
def doctors_by_specialty(specialty_id):
    doctors = Doctor.query.filter_by(specialty_id=specialty_id, is_active=True).all()
    return jsonify([d.to_dict() for d in doctors])


@doctors_bp.route("/user/<int:user_id>", methods=["GET"])
@login_required
def doctor_by_user(user_id):
    if g.user_id != user_id and g.user_role != "admin":
        raise AuthorizationError("Vous ne pouvez consulter que votre propre profil médecin")
    doctor = Doctor.query.filter_by(user_id=user_id).first()
    if doctor is None:
        raise NotFoundError("Aucun profil médecin pour cet utilisateur")
    return jsonify(doctor.to_dict())


@doctors_bp.route("", methods=["POST"])
@login_required
@require_permission(DOCTOR_CREATE)
def create_doctor():
    data = request.get_json(silent=True) or {}
    user_id = data.get("userId")
    if user_id is None:
        raise ValidationError("userId est requis")
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"Utilisateur id={user_id} introuvable")
    if user.role != "doctor":
        raise ValidationError("Le compte lié doit avoir le rôle doctor")
    if Doctor.query.filter_by(user_id=user.id).first():
        raise ConflictError("Ce compte a déjà un profil médecin")

    doctor = Doctor(user_id=user.id)
    _apply_doctor_fields(doctor, data)
    db.session.add(doctor)
    db.session.commit()
    current_app.logger.info("[DOCTOR] créé id=%s user=%s", doctor.id, user.id)
    return jsonify({"success": True, "message": "Médecin créé", "doctor": doctor.to_dict()}), 201


@doctors_bp.route("/<int:doctor_id>", methods=["PUT"])
@login_required
def update_doctor(doctor_id):
    doctor = scheduling.get_doctor_or_404(doctor_id)
    if not (can_manage_doctor(g.user_id, doctor_id, g.user_role)
            or has_permission(DOCTOR_UPDATE_ALL, "doctor", doctor_id)):
        raise AuthorizationError("Accès refusé")
    _apply_doctor_fields(doctor, request.get_json(silent=True) or {})
    db.session.commit()
    return jsonify({"success": True, "message": "Médecin mis à jour", "doctor": doctor.to_dict()})


@doctors_bp.route("/<int:doctor_id>", methods=["DELETE"])
@login_required
@require_permission(DOCTOR_DELETE)
def delete_doctor(doctor_id):
    doctor = scheduling.get_doctor_or_404(doctor_id)
    db.session.delete(doctor)
    db.session.commit()
    return jsonify({"success": True, "message": "Médecin supprimé"})


# === Agenda hebdomadaire ===
@doctors_bp.route("/<int:doctor_id>/availability", methods=["GET"])
def get_availability(doctor_id):
    scheduling.get_doctor_or_404(doctor_id)
    return jsonify([a.to_dict() for a in scheduling.list_availability(doctor_id)])


@doctors_bp.route("/<int:doctor_id>/availability", methods=["POST"])
@login_required
def set_availability(doctor_id):
    _ensure_can_manage(doctor_id)
    row, created = scheduling.set_availability(doctor_id, request.get_json(silent=True) or {})
    message = "Disponibilité créée" if created else "Disponibilité mise à jour"
    return jsonify({"success": True, "message": message, "availability": row.to_dict()}), (201 if created else 200)


@doctors_bp.route("/<int:doctor_id>/availability/<day_of_week>", methods=["DELETE"])
@login_required
def remove_availability(doctor_id, day_of_week):
    _ensure_can_manage(doctor_id)
    scheduling.remove_availability(doctor_id, day_of_week)
    return jsonify({"success": True, "message": "Disponibilité supprimée"})


@doctors_bp.route("/<int:doctor_id>/available-slots/<day>", methods=["GET"])
def available_slots(doctor_id, day):
    scheduling.get_doctor_or_404(doctor_id)
    return jsonify(scheduling.get_available_time_slots(doctor_id, day))


# === Absences ===
@doctors_bp.route("/<int:doctor_id>/absences", methods=["GET"])
@login_required
def list_absences(doctor_id):
    scheduling.get_doctor_or_404(doctor_id)
    q = DoctorAbsence.query.filter_by(doctor_id=doctor_id)
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    return jsonify([a.to_dict() for a in q.order_by(DoctorAbsence.start_date).all()])


@doctors_bp.route("/<int:doctor_id>/absences", methods=["POST"])
@login_required
def add_absence(doctor_id):
    _ensure_can_manage(doctor_id)
    absence = scheduling.create_absence(doctor_id, request.get_json(silent=True) or {})
    return jsonify({"success": True, "message": "Absence enregistrée", "absence": absence.to_dict()}), 201


@doctors_bp.route("/<int:doctor_id>/absences/<int:absence_id>", methods=["DELETE"])
@login_required
def remove_absence(doctor_id, absence_id):
    _ensure_can_manage(doctor_id)
    scheduling.remove_absence(doctor_id, absence_id)
    return jsonify({"success": True, "message": "Absence supprimée"})


@doctors_bp.route("/<int:doctor_id>/absences/<int:absence_id>/status", methods=["PUT"])
@login_required
def update_absence_status(doctor_id, absence_id):
    data = request.get_json(silent=True) or {}
    absence = scheduling.update_absence_status(
        doctor_id, absence_id, data.get("status"),
        reviewer=current_user, permissions=g.permissions, notes=data.get("notes"),
    )
    return jsonify({"success": True, "message": f"Absence {absence.status}", "absence": absence.to_dict()})


# === Gestionnaires (responsables rattachés) ===
@doctors_bp.route("/<int:doctor_id>/managers", methods=["GET"])
@login_required
def list_managers(doctor_id):
    _ensure_can_manage(doctor_id)
    rows = DoctorManager.query.filter_by(doctor_id=doctor_id).all()
    return jsonify([m.to_dict() for m in rows])


@doctors_bp.route("/<int:doctor_id>/managers", methods=["POST"])
@login_required
@require_permission(DOCTOR_MANAGE)
def add_manager(doctor_id):
    scheduling.get_doctor_or_404(doctor_id)
    data = request.get_json(silent=True) or {}
    manager = db.session.get(User, data.get("managerId")) if data.get("managerId") else None
    if manager is None:
        raise NotFoundError("Gestionnaire introuvable")
    if manager.role not in ("responsable", "admin"):
        raise ValidationError("Le gestionnaire doit avoir le rôle responsable")
    if DoctorManager.query.filter_by(doctor_id=doctor_id, manager_id=manager.id).first():
        raise ConflictError("Ce gestionnaire est déjà rattaché au médecin")
    row = DoctorManager(
        doctor_id=doctor_id,
        manager_id=manager.id,
        is_primary=bool(data.get("isPrimary", False)),
        can_edit_schedule=bool(data.get("canEditSchedule", True)),
        can_manage_appointments=bool(data.get("canManageAppointments", True)),
    )
    db.session.add(row)
    db.session.commit()
    return jsonify({"success": True, "manager": row.to_dict()}), 201


@doctors_bp.route("/<int:doctor_id>/managers/<int:manager_id>", methods=["DELETE"])
@login_required
@require_permission(DOCTOR_MANAGE)
def remove_manager(doctor_id, manager_id):
    row = DoctorManager.query.filter_by(doctor_id=doctor_id, manager_id=manager_id).first()
    if row is None:
        raise NotFoundError("Rattachement introuvable")
    db.session.delete(row)
    db.session.commit()
    return jsonify({"success": True, "message": "Gestionnaire retiré"})
