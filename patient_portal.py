# patient_portal.py — Blueprint rendez-vous (réservation, statut, annulation, consultations)
from flask import Blueprint, g, jsonify, request
from flask_login import login_required

import booking
from errors import AuthorizationError
from permissions import (
    APPOINTMENT_DELETE, APPOINTMENT_UPDATE_ALL, APPOINTMENT_VIEW_ALL,
    can_access_doctor_appointments, can_access_user_appointments, has_permission,
    require_permission, same_user,
)
from scheduling import get_doctor_or_404

appointments_bp = Blueprint("appointments", __name__)


def _allowed_on(name, ap) -> bool:
    # portée acceptée : le rendez-vous lui-même ou son médecin
    return has_permission(name, "appointment", ap.id) or has_permission(name, "doctor", ap.doctor_id)


def _ensure_can_see(ap):
    if ap.user_id is not None and ap.user_id == g.user_id:
        return
    if can_access_doctor_appointments(g.user_id, ap.doctor_id, g.user_role):
        return
    if _allowed_on(APPOINTMENT_VIEW_ALL, ap):
        return
    raise AuthorizationError("Accès refusé à ce rendez-vous")


def _ensure_can_update(ap):
    if g.user_role in ("doctor", "responsable", "admin") and can_access_doctor_appointments(
        g.user_id, ap.doctor_id, g.user_role
    ):
        return
    if _allowed_on(APPOINTMENT_UPDATE_ALL, ap):
        return
    raise AuthorizationError("Seuls le médecin, un responsable ou un administrateur peuvent changer le statut")


# === Réservation (ouverte aux invités) ===
@appointments_bp.route("", methods=["POST"])
def create_appointment():
    data = request.get_json(silent=True) or {}
    if g.user_role == "patient":
        # un patient connecté réserve pour lui-même
        if data.get("userId") is not None and not same_user(data.get("userId"), g.user_id):
            raise AuthorizationError("Vous ne pouvez réserver que pour votre propre compte")
        guest_fields = any(data.get(f) for f in booking.GUEST_FIELDS) or data.get("isGuestBooking")
        if data.get("userId") is None and not guest_fields:
            data["userId"] = g.user_id
    ap = booking.create_appointment(data)
    return jsonify({"success": True, "message": "Rendez-vous enregistré", "appointment": ap.to_dict()}), 201


# === Consultation ===
@appointments_bp.route("", methods=["GET"])
@login_required
@require_permission(APPOINTMENT_VIEW_ALL)
def list_appointments():
    rows = booking.list_appointments(status=request.args.get("status"))
    return jsonify([a.to_dict() for a in rows])


@appointments_bp.route("/<int:appointment_id>", methods=["GET"])
@login_required
def get_appointment(appointment_id):
    ap = booking.get_appointment_or_404(appointment_id)
    _ensure_can_see(ap)
    return jsonify(ap.to_dict())


@appointments_bp.route("/doctor/<int:doctor_id>", methods=["GET"])
@login_required
def appointments_for_doctor(doctor_id):
    get_doctor_or_404(doctor_id)
    if not (can_access_doctor_appointments(g.user_id, doctor_id, g.user_role)
            or has_permission(APPOINTMENT_VIEW_ALL, "doctor", doctor_id)):
        raise AuthorizationError("Accès refusé aux rendez-vous de ce médecin")
    rows = booking.appointments_for_doctor(doctor_id, day=request.args.get("date"))
    return jsonify([a.to_dict() for a in rows])


@appointments_bp.route("/user/<int:user_id>", methods=["GET"])
@login_required
def appointments_for_user(user_id):
    if not can_access_user_appointments(g.user_id, user_id, g.user_role):
        raise AuthorizationError("Vous ne pouvez consulter que vos propres rendez-vous")
    return jsonify([a.to_dict() for a in booking.appointments_for_user(user_id)])


# === Statut / annulation ===
@appointments_bp.route("/<int:appointment_id>/status", methods=["PUT"])
@login_required
def update_status(appointment_id):
    data = request.get_json(silent=True) or {}
    ap = booking.get_appointment_or_404(appointment_id)
    _ensure_can_update(ap)
    ap = booking.update_status(appointment_id, data.get("status"), data.get("notes"))
    return jsonify({"success": True, "message": "Statut du rendez-vous mis à jour", "appointment": ap.to_dict()})


@appointments_bp.route("/<int:appointment_id>/cancel", methods=["PUT"])
@login_required
def cancel_appointment(appointment_id):
    data = request.get_json(silent=True) or {}
    ap = booking.get_appointment_or_404(appointment_id)
    if not (ap.user_id is not None and ap.user_id == g.user_id):
        _ensure_can_update(ap)
    ap = booking.cancel_appointment(appointment_id, reason=data.get("reason"), canceled_by=g.user_id)
    return jsonify({"success": True, "message": "Rendez-vous annulé", "appointment": ap.to_dict()})


# === Administration ===
@appointments_bp.route("/<int:appointment_id>", methods=["PUT"])
@login_required
@require_permission(APPOINTMENT_UPDATE_ALL)
def update_appointment(appointment_id):
    ap = booking.update_appointment(appointment_id, request.get_json(silent=True) or {})
    return jsonify({"success": True, "message": "Rendez-vous mis à jour", "appointment": ap.to_dict()})


@appointments_bp.route("/<int:appointment_id>", methods=["DELETE"])
@login_required
@require_permission(APPOINTMENT_DELETE)
def delete_appointment(appointment_id):
    booking.delete_appointment(appointment_id)
    return jsonify({"success": True, "message": "Rendez-vous supprimé"})
