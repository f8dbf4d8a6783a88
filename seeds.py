# seeds.py
# ------------------------------------------------------------
# Données de référence + insertion idempotente :
# - permissions du catalogue et permissions par rôle
# - gabarits de notification utilisés par les flux RDV / absences
# - spécialités médicales
# ------------------------------------------------------------
from models import db, NotificationTemplate, Permission, RolePermission, Specialty
from permissions import CATALOG, DEFAULT_ROLE_PERMISSIONS
import notifications as N

SPECIALTIES = [
    ("Médecine générale", "Consultations de premier recours"),
    ("Cardiologie", "Cœur et vaisseaux"),
    ("Dermatologie", "Peau, cheveux et ongles"),
    ("Pédiatrie", "Enfants et adolescents"),
    ("Gynécologie", "Santé de la femme"),
    ("Ophtalmologie", "Yeux et vision"),
    ("ORL", "Oreilles, nez, gorge"),
    ("Psychiatrie", "Santé mentale"),
]

TEMPLATES = [
    {
        "name": N.TPL_APPOINTMENT_CREATED,
        "type": "appointment",
        "category": "appointment",
        "subject": "Votre demande de rendez-vous est enregistrée",
        "content": (
            "Bonjour {{patientName}},\n\nVotre demande de RDV du {{date}} à {{time}} avec "
            "{{doctorName}} est bien enregistrée et en attente de confirmation.\n\n{{brand}}"
        ),
    },
    {
        "name": N.TPL_APPOINTMENT_CREATED_DOCTOR,
        "type": "appointment",
        "category": "appointment",
        "subject": "Nouveau RDV à confirmer",
        "content": "Nouveau RDV à confirmer le {{date}} à {{time}} avec {{patientName}}.\nMotif : {{reason}}",
    },
    {
        "name": N.TPL_APPOINTMENT_STATUS_CHANGED,
        "type": "appointment",
        "category": "appointment",
        "subject": "Votre RDV du {{date}} est {{status}}",
        "content": (
            "Bonjour {{patientName}},\n\nLe statut de votre RDV du {{date}} à {{time}} avec "
            "{{doctorName}} est passé de « {{previousStatus}} » à « {{status}} ».\n\n{{brand}}"
        ),
    },
    {
        "name": N.TPL_APPOINTMENT_CANCELED,
        "type": "appointment",
        "category": "appointment",
        "subject": "RDV du {{date}} annulé",
        "content": "Le RDV du {{date}} à {{time}} ({{patientName}} / {{doctorName}}) a été annulé.",
        "default_priority": "high",
    },
    {
        "name": N.TPL_ABSENCE_APPROVED_PATIENT,
        "type": "absence",
        "category": "schedule",
        "subject": "Votre RDV du {{appointmentDate}} est impacté",
        "content": (
            "Bonjour {{patientName}},\n\n{{doctorName}} sera absent(e) du {{startDate}} au {{endDate}}. "
            "Votre RDV du {{appointmentDate}} à {{appointmentTime}} doit être reprogrammé.\n\n{{brand}}"
        ),
        "default_priority": "high",
    },
    {
        "name": N.TPL_ABSENCE_APPROVED,
        "type": "absence",
        "category": "schedule",
        "subject": "Absence validée",
        "content": "Votre absence du {{startDate}} au {{endDate}} ({{reason}}) a été validée.",
    },
    {
        "name": N.TPL_ABSENCE_REJECTED,
        "type": "absence",
        "category": "schedule",
        "subject": "Absence refusée",
        "content": "Votre absence du {{startDate}} au {{endDate}} ({{reason}}) a été refusée.",
    },
]


def seed_permissions() -> int:
    created = 0
    for name, (description, category) in CATALOG.items():
        if not Permission.query.filter_by(name=name).first():
            db.session.add(Permission(name=name, description=description, category=category))
            created += 1
    db.session.flush()
    return created


def seed_role_permissions() -> int:
    by_name = {p.name: p.id for p in Permission.query.all()}
    created = 0
    for role, names in DEFAULT_ROLE_PERMISSIONS.items():
        for name in names:
            pid = by_name.get(name)
            if pid and not RolePermission.query.filter_by(role=role, permission_id=pid).first():
                db.session.add(RolePermission(role=role, permission_id=pid))
                created += 1
    return created


def seed_templates() -> int:
    created = 0
    for data in TEMPLATES:
        if not NotificationTemplate.query.filter_by(name=data["name"]).first():
            db.session.add(NotificationTemplate(**data))
            created += 1
    return created


def seed_specialties() -> int:
    created = 0
    for name, description in SPECIALTIES:
        if not Specialty.query.filter_by(name=name).first():
            db.session.add(Specialty(name=name, description=description))
            created += 1
    return created


def seed_all() -> dict:
    counts = {
        "permissions": seed_permissions(),
        "role_permissions": seed_role_permissions(),
        "templates": seed_templates(),
        "specialties": seed_specialties(),
    }
    db.session.commit()
    return counts
