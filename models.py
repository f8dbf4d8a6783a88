# models.py — schéma RDV médicaux (permissions, agenda médecin, rendez-vous, notifications)
from extensions import db
from flask_login import UserMixin
from datetime import datetime

ROLES = ("patient", "responsable", "doctor", "admin")
USER_STATUSES = ("active", "inactive", "suspended")

DAYS_OF_WEEK = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")

APPOINTMENT_STATUSES = ("pending", "confirmed", "canceled", "completed", "no-show")
ACTIVE_APPOINTMENT_STATUSES = ("pending", "confirmed")
TERMINAL_APPOINTMENT_STATUSES = ("completed", "canceled")

ABSENCE_STATUSES = ("pending", "approved", "rejected")

NOTIFICATION_PRIORITIES = ("low", "normal", "high", "urgent")
NOTIFICATION_CHANNELS = ("email", "sms", "in-app", "push")
DELIVERY_STATUSES = ("pending", "sent", "delivered", "failed")


def _iso(value):
    return value.isoformat() if value is not None else None


# ======================
# Utilisateurs
# ======================
class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(30))
    role = db.Column(db.String(20), nullable=False, default="patient")
    status = db.Column(db.String(20), nullable=False, default="active")
    last_login_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_users_role", "role"),
        db.Index("ix_users_created_at", "created_at"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "status": self.status,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<User id={self.id} {self.email} role={self.role}>"


# ======================
# Permissions
# ======================
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(50), nullable=False, default="general")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_permissions_category", "category"),
        db.Index("ix_permissions_is_active", "is_active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "isActive": self.is_active,
        }

    def __repr__(self):
        return f"<Permission id={self.id} {self.name}>"


class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(20), nullable=False)
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    granted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    granted_at = db.Column(db.DateTime, default=datetime.utcnow)

    permission = db.relationship(
        "Permission", lazy="joined",
        backref=db.backref("role_grants", lazy="dynamic", passive_deletes=True),
    )

    __table_args__ = (
        db.UniqueConstraint("role", "permission_id", name="uq_role_permission"),
        db.Index("ix_role_permissions_role", "role"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "role": self.role,
            "permissionId": self.permission_id,
            "permission": self.permission.to_dict() if self.permission else None,
            "grantedBy": self.granted_by,
            "grantedAt": _iso(self.granted_at),
        }

    def __repr__(self):
        return f"<RolePermission {self.role} -> {self.permission_id}>"


class UserPermission(db.Model):
    __tablename__ = "user_permissions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    # False = refus explicite (prioritaire sur la permission de rôle)
    is_granted = db.Column(db.Boolean, nullable=False, default=True)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.String(64))
    expires_at = db.Column(db.DateTime)
    granted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    reason = db.Column(db.String(255))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    permission = db.relationship(
        "Permission", lazy="joined",
        backref=db.backref("user_grants", lazy="dynamic", passive_deletes=True),
    )
    user = db.relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        # un accord et un refus peuvent coexister sur la même portée (le refus l'emporte)
        db.UniqueConstraint(
            "user_id", "permission_id", "resource_type", "resource_id", "is_granted",
            name="uq_user_permission_scope",
        ),
        db.Index("ix_user_permissions_user", "user_id"),
        db.Index("ix_user_permissions_expires", "expires_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "permissionId": self.permission_id,
            "permission": self.permission.to_dict() if self.permission else None,
            "isGranted": self.is_granted,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "expiresAt": _iso(self.expires_at),
            "grantedBy": self.granted_by,
            "reason": self.reason,
        }

    def __repr__(self):
        flag = "grant" if self.is_granted else "deny"
        return f"<UserPermission user={self.user_id} perm={self.permission_id} {flag}>"


# ======================
# Référentiels
# ======================
class Specialty(db.Model):
    __tablename__ = "specialties"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), unique=True, nullable=False)
    description = db.Column(db.Text)

    __table_args__ = (db.Index("ix_specialties_name", "name"),)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "description": self.description}

    def __repr__(self):
        return f"<Specialty id={self.id} {self.name}>"


# ======================
# Médecins
# ======================
class Doctor(db.Model):
    __tablename__ = "doctors"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    specialty_id = db.Column(
        db.Integer, db.ForeignKey("specialties.id", ondelete="SET NULL"), nullable=True
    )

    bio = db.Column(db.Text)
    experience = db.Column(db.String(255))
    years_of_experience = db.Column(db.Integer)
    rating = db.Column(db.Float, default=0)
    review_count = db.Column(db.Integer, default=0)
    languages = db.Column(db.JSON, nullable=False, default=list)
    office_address = db.Column(db.String(255))
    office_hours = db.Column(db.String(255))
    accepting_new_patients = db.Column(db.Boolean, default=True)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship(
        "User", lazy="joined",
        backref=db.backref("doctor_profile", uselist=False, passive_deletes=True),
    )
    specialty = db.relationship(
        "Specialty", lazy="joined", backref=db.backref("doctors", lazy="dynamic")
    )

    __table_args__ = (
        db.Index("ix_doctors_specialty", "specialty_id"),
        db.Index("ix_doctors_is_active", "is_active"),
    )

    @property
    def name(self) -> str:
        return self.user.name if self.user else f"Médecin #{self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "specialtyId": self.specialty_id,
            "specialty": self.specialty.to_dict() if self.specialty else None,
            "bio": self.bio,
            "experience": self.experience,
            "yearsOfExperience": self.years_of_experience,
            "rating": self.rating,
            "reviewCount": self.review_count,
            "languages": list(self.languages or []),
            "officeAddress": self.office_address,
            "officeHours": self.office_hours,
            "acceptingNewPatients": self.accepting_new_patients,
            "isActive": self.is_active,
        }

    def __repr__(self):
        return f"<Doctor id={self.id} user={self.user_id} spec={self.specialty_id}>"


class DoctorManager(db.Model):
    """Délégation de gestion d'un médecin (responsable de cabinet, secrétariat)."""
    __tablename__ = "doctor_managers"

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(
        db.Integer, db.ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False
    )
    manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    is_primary = db.Column(db.Boolean, default=False)
    can_edit_schedule = db.Column(db.Boolean, default=True)
    can_manage_appointments = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("doctor_id", "manager_id", name="uq_doctor_manager"),
        db.Index("ix_doctor_managers_manager", "manager_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "doctorId": self.doctor_id,
            "managerId": self.manager_id,
            "isPrimary": self.is_primary,
            "canEditSchedule": self.can_edit_schedule,
            "canManageAppointments": self.can_manage_appointments,
        }


# ======================
# Agenda médecin
# ======================
class DoctorAvailability(db.Model):
    __tablename__ = "doctor_availabilities"

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(
        db.Integer, db.ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week = db.Column(db.String(10), nullable=False)  # monday … sunday
    start_time = db.Column(db.String(5), nullable=False)  # "HH:MM"
    end_time = db.Column(db.String(5), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("doctor_id", "day_of_week", name="uq_availability_doctor_day"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "doctorId": self.doctor_id,
            "dayOfWeek": self.day_of_week,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }

    def __repr__(self):
        return f"<DoctorAvailability doctor={self.doctor_id} {self.day_of_week} {self.start_time}-{self.end_time}>"


class DoctorAbsence(db.Model):
    __tablename__ = "doctor_absences"

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(
        db.Integer, db.ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False
    )
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)  # inclusif
    reason = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    reviewed_at = db.Column(db.DateTime)
    # "metadata" est réservé par SQLAlchemy côté attribut
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    doctor = db.relationship(
        "Doctor", lazy="joined",
        backref=db.backref("absences", lazy="dynamic", passive_deletes=True),
    )

    __table_args__ = (
        db.Index("ix_absences_doctor_range", "doctor_id", "start_date", "end_date"),
        db.Index("ix_absences_status", "status"),
    )

    # ---- Accès typés au document JSON (réassignation pour que SQLAlchemy voie le changement)
    @property
    def status_history(self) -> list:
        return list((self.meta or {}).get("status_history", []))

    def append_status_history(self, entry: dict) -> None:
        data = dict(self.meta or {})
        data["status_history"] = self.status_history + [entry]
        self.meta = data

    @property
    def notified_patients(self) -> int:
        return int((self.meta or {}).get("notified_patients", 0))

    @notified_patients.setter
    def notified_patients(self, value: int) -> None:
        data = dict(self.meta or {})
        data["notified_patients"] = int(value)
        self.meta = data

    def to_dict(self):
        return {
            "id": self.id,
            "doctorId": self.doctor_id,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "reason": self.reason,
            "status": self.status,
            "reviewedBy": self.reviewed_by,
            "reviewedAt": _iso(self.reviewed_at),
            "metadata": {
                "statusHistory": self.status_history,
                "notifiedPatients": self.notified_patients,
            },
        }

    def __repr__(self):
        return f"<DoctorAbsence id={self.id} doctor={self.doctor_id} {self.start_date}..{self.end_date} {self.status}>"


# ======================
# Rendez-vous
# ======================
class Appointment(db.Model):
    __tablename__ = "appointments"

    id = db.Column(db.Integer, primary_key=True)
    doctor_id = db.Column(
        db.Integer, db.ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False
    )
    date = db.Column(db.Date, nullable=False)
    time = db.Column(db.String(5), nullable=False)  # "HH:MM"
    duration = db.Column(db.Integer, nullable=False, default=30)  # minutes
    status = db.Column(db.String(20), nullable=False, default="pending")
    reason = db.Column(db.Text, nullable=False)

    # Patient inscrit XOR invité (nom/email/téléphone)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    patient_name = db.Column(db.String(120))
    patient_email = db.Column(db.String(120))
    patient_phone = db.Column(db.String(30))
    is_guest_booking = db.Column(db.Boolean, nullable=False, default=False)

    notes = db.Column(db.Text)
    cancel_reason = db.Column(db.Text)
    canceled_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    doctor = db.relationship(
        "Doctor", lazy="joined",
        backref=db.backref("appointments", lazy="dynamic", passive_deletes=True),
    )
    user = db.relationship("User", lazy="joined", foreign_keys=[user_id])

    __table_args__ = (
        db.Index("ix_appointments_doctor_date", "doctor_id", "date"),
        db.Index("ix_appointments_user", "user_id"),
        db.Index("ix_appointments_status", "status"),
        # Un seul RDV actif par créneau (pending|confirmed)
        db.Index(
            "uq_appointments_active_slot", "doctor_id", "date", "time",
            unique=True,
            postgresql_where=db.text("status IN ('pending', 'confirmed')"),
            sqlite_where=db.text("status IN ('pending', 'confirmed')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPOINTMENT_STATUSES

    @property
    def display_patient_name(self) -> str:
        if self.user is not None:
            return self.user.name
        return self.patient_name or "Patient"

    @property
    def contact_email(self) -> str | None:
        if self.user is not None:
            return self.user.email
        return self.patient_email

    def to_dict(self):
        return {
            "id": self.id,
            "doctorId": self.doctor_id,
            "doctorName": self.doctor.name if self.doctor else None,
            "date": _iso(self.date),
            "time": self.time,
            "duration": self.duration,
            "status": self.status,
            "reason": self.reason,
            "userId": self.user_id,
            "patientName": self.display_patient_name,
            "patientEmail": self.contact_email,
            "patientPhone": self.user.phone if self.user is not None else self.patient_phone,
            "isGuestBooking": self.is_guest_booking,
            "notes": self.notes,
            "cancelReason": self.cancel_reason,
            "canceledBy": self.canceled_by,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Appointment id={self.id} doctor={self.doctor_id} {self.date} {self.time} {self.status}>"


# ======================
# Dossier médical
# ======================
class MedicalDossier(db.Model):
    __tablename__ = "medical_dossiers"

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    patient_name = db.Column(db.String(120), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    entries = db.relationship(
        "MedicalHistoryEntry", lazy="dynamic", passive_deletes=True,
        backref=db.backref("dossier", lazy="joined"),
        order_by="MedicalHistoryEntry.date.desc()",
    )

    def to_dict(self, with_entries: bool = False):
        data = {
            "id": self.id,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "createdAt": _iso(self.created_at),
        }
        if with_entries:
            data["historyEntries"] = [e.to_dict() for e in self.entries]
        return data


class MedicalHistoryEntry(db.Model):
    __tablename__ = "medical_history_entries"

    id = db.Column(db.Integer, primary_key=True)
    dossier_id = db.Column(
        db.Integer, db.ForeignKey("medical_dossiers.id", ondelete="CASCADE"), nullable=False
    )
    appointment_id = db.Column(
        db.Integer, db.ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True
    )
    date = db.Column(db.Date, nullable=False)
    doctor_id = db.Column(
        db.Integer, db.ForeignKey("doctors.id", ondelete="SET NULL"), nullable=True
    )
    doctor_name = db.Column(db.String(120))
    notes = db.Column(db.Text)
    diagnosis = db.Column(db.Text)
    treatment = db.Column(db.Text)
    prescriptions = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_history_dossier", "dossier_id"),
        db.Index("ix_history_appointment", "appointment_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "dossierId": self.dossier_id,
            "appointmentId": self.appointment_id,
            "date": _iso(self.date),
            "doctorId": self.doctor_id,
            "doctorName": self.doctor_name,
            "notes": self.notes,
            "diagnosis": self.diagnosis,
            "treatment": self.treatment,
            "prescriptions": self.prescriptions,
        }


# ======================
# Notifications
# ======================
class NotificationTemplate(db.Model):
    __tablename__ = "notification_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    subject = db.Column(db.String(255), nullable=False)  # {{variable}}
    content = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(50), nullable=False)
    category = db.Column(db.String(50), nullable=False, default="general")
    default_priority = db.Column(db.String(10), nullable=False, default="normal")
    default_channel = db.Column(db.String(10), nullable=False, default="in-app")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_templates_type", "type"),
        db.Index("ix_templates_category", "category"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "subject": self.subject,
            "content": self.content,
            "type": self.type,
            "category": self.category,
            "defaultPriority": self.default_priority,
            "defaultChannel": self.default_channel,
            "isActive": self.is_active,
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime)
    priority = db.Column(db.String(10), nullable=False, default="normal")
    channel = db.Column(db.String(10), nullable=False, default="in-app")
    delivery_status = db.Column(db.String(10), nullable=False, default="pending")
    template_id = db.Column(
        db.Integer, db.ForeignKey("notification_templates.id", ondelete="SET NULL")
    )
    related_entity_type = db.Column(db.String(50))
    related_entity_id = db.Column(db.Integer)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    deleted_at = db.Column(db.DateTime)  # suppression logique

    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "is_read"),
        db.Index("ix_notifications_related", "related_entity_type", "related_entity_id"),
        db.Index("ix_notifications_deleted", "deleted_at"),
    )

    @classmethod
    def visible(cls):
        return cls.query.filter(cls.deleted_at.is_(None))

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "isRead": self.is_read,
            "readAt": _iso(self.read_at),
            "priority": self.priority,
            "channel": self.channel,
            "deliveryStatus": self.delivery_status,
            "templateId": self.template_id,
            "relatedEntityType": self.related_entity_type,
            "relatedEntityId": self.related_entity_id,
            "metadata": dict(self.meta or {}),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification id={self.id} user={self.user_id} {self.type} read={self.is_read}>"
