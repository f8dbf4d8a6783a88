# notification_center.py — boîte de réception des notifications et administration des gabarits
from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request
from flask_login import login_required
from sqlalchemy import func

import notifications
from errors import AuthorizationError, NotFoundError, ValidationError
from models import (
    db, Notification, NOTIFICATION_CHANNELS, NOTIFICATION_PRIORITIES, NotificationTemplate, User,
)
from permissions import (
    NOTIFICATION_CREATE, NOTIFICATION_MANAGE_ALL,
    can_access_user_notifications, can_manage_user_notifications, require_permission,
)

notifications_bp = Blueprint("notifications", __name__)
templates_bp = Blueprint("notification_templates", __name__)


def _filtered(user_id: int):
    q = Notification.visible().filter(Notification.user_id == user_id)
    ntype = request.args.get("type")
    if ntype:
        q = q.filter(Notification.type == ntype)
    if str(request.args.get("unread", "")).lower() in ("1", "true", "yes"):
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc())


def _get_visible_or_404(notification_id: int) -> Notification:
    notif = Notification.visible().filter(Notification.id == notification_id).first()
    if notif is None:
        raise NotFoundError("Notification introuvable")
    return notif


def _check_choice(value, allowed, field):
    if value is not None and value not in allowed:
        raise ValidationError(f"{field} invalide : {value}")


# ======================
# Boîte de réception
# ======================
@notifications_bp.route("", methods=["GET"])
@login_required
def my_notifications():
    return jsonify([n.to_dict() for n in _filtered(g.user_id).all()])


@notifications_bp.route("/user/<int:user_id>", methods=["GET"])
@login_required
def user_notifications(user_id):
    if not can_access_user_notifications(g.user_id, user_id, g.user_role):
        raise AuthorizationError("Vous ne pouvez consulter que vos propres notifications")
    return jsonify([n.to_dict() for n in _filtered(user_id).all()])


@notifications_bp.route("/unread-count", methods=["GET"])
@login_required
def unread_count():
    count = (
        db.session.query(func.count(Notification.id))
        .filter(
            Notification.user_id == g.user_id,
            Notification.is_read.is_(False),
            Notification.deleted_at.is_(None),
        )
        .scalar()
    )
    return jsonify({"count": count or 0})


@notifications_bp.route("/<int:notification_id>", methods=["GET"])
@login_required
def get_notification(notification_id):
    notif = _get_visible_or_404(notification_id)
    if not can_access_user_notifications(g.user_id, notif.user_id, g.user_role):
        raise AuthorizationError("Accès refusé à cette notification")
    return jsonify(notif.to_dict())


@notifications_bp.route("/<int:notification_id>/read", methods=["PUT"])
@login_required
def mark_read(notification_id):
    notif = _get_visible_or_404(notification_id)
    if not can_manage_user_notifications(g.user_id, notif.user_id, g.user_role):
        raise AuthorizationError("Accès refusé à cette notification")
    if not notif.is_read:
        notif.is_read = True
        notif.read_at = datetime.utcnow()
        db.session.commit()
    return jsonify({"success": True, "notification": notif.to_dict()})


@notifications_bp.route("/user/<int:user_id>/read-all", methods=["PUT"])
@login_required
def mark_all_read(user_id):
    if not can_manage_user_notifications(g.user_id, user_id, g.user_role):
        raise AuthorizationError("Accès refusé")
    count = (
        Notification.visible()
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({"is_read": True, "read_at": datetime.utcnow()}, synchronize_session=False)
    )
    db.session.commit()
    return jsonify({"success": True, "count": count})


@notifications_bp.route("/<int:notification_id>", methods=["DELETE"])
@login_required
def delete_notification(notification_id):
    notif = _get_visible_or_404(notification_id)
    if not can_manage_user_notifications(g.user_id, notif.user_id, g.user_role):
        raise AuthorizationError("Accès refusé à cette notification")
    notif.deleted_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"success": True, "message": "Notification supprimée"})


@notifications_bp.route("/user/<int:user_id>", methods=["DELETE"])
@login_required
def delete_all_for_user(user_id):
    if not can_manage_user_notifications(g.user_id, user_id, g.user_role):
        raise AuthorizationError("Accès refusé")
    count = (
        Notification.visible()
        .filter(Notification.user_id == user_id)
        .update({"deleted_at": datetime.utcnow()}, synchronize_session=False)
    )
    db.session.commit()
    return jsonify({"success": True, "count": count})


# ======================
# Émission
# ======================
@notifications_bp.route("", methods=["POST"])
@login_required
@require_permission(NOTIFICATION_CREATE)
def create_notification():
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("userId", "type", "title", "content") if not data.get(k)]
    if missing:
        raise ValidationError(f"Champs requis manquants : {', '.join(missing)}")
    if db.session.get(User, data["userId"]) is None:
        raise NotFoundError(f"Utilisateur id={data['userId']} introuvable")
    priority = data.get("priority") or "normal"
    channel = data.get("channel") or "in-app"
    _check_choice(priority, NOTIFICATION_PRIORITIES, "priority")
    _check_choice(channel, NOTIFICATION_CHANNELS, "channel")

    notif = notifications.create_notification(
        data["userId"],
        type=data["type"],
        title=data["title"],
        content=data["content"],
        priority=priority,
        channel=channel,
        related_entity_type=data.get("relatedEntityType"),
        related_entity_id=data.get("relatedEntityId"),
        metadata=data.get("metadata"),
    )
    db.session.commit()
    return jsonify({"success": True, "notification": notif.to_dict()}), 201


@notifications_bp.route("/from-template", methods=["POST"])
@login_required
@require_permission(NOTIFICATION_CREATE)
def create_from_template():
    data = request.get_json(silent=True) or {}
    name = data.get("templateName")
    recipients = data.get("userIds") or ([data["userId"]] if data.get("userId") else [])
    if not name or not recipients:
        raise ValidationError("templateName et userId (ou userIds) sont requis")
    if NotificationTemplate.query.filter_by(name=name, is_active=True).first() is None:
        raise NotFoundError(f"Gabarit {name} introuvable ou inactif")

    created = notifications.dispatch(
        name, recipients, data.get("variables") or {},
        related_entity_type=data.get("relatedEntityType"),
        related_entity_id=data.get("relatedEntityId"),
        priority=data.get("priority"),
        channel=data.get("channel"),
    )
    db.session.commit()
    return jsonify({"success": True, "notifications": [n.to_dict() for n in created]}), 201


# ======================
# Gabarits
# ======================
TEMPLATE_FIELDS = {
    "name": "name",
    "subject": "subject",
    "content": "content",
    "type": "type",
    "category": "category",
    "defaultPriority": "default_priority",
    "defaultChannel": "default_channel",
    "isActive": "is_active",
}


def _template_or_404(template_id: int) -> NotificationTemplate:
    tpl = db.session.get(NotificationTemplate, template_id)
    if tpl is None:
        raise NotFoundError("Gabarit introuvable")
    return tpl


def _apply_template_fields(tpl: NotificationTemplate, data: dict):
    _check_choice(data.get("defaultPriority"), NOTIFICATION_PRIORITIES, "defaultPriority")
    _check_choice(data.get("defaultChannel"), NOTIFICATION_CHANNELS, "defaultChannel")
    for key, attr in TEMPLATE_FIELDS.items():
        if key in data:
            setattr(tpl, attr, data[key])


@templates_bp.route("", methods=["GET"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def list_templates():
    q = NotificationTemplate.query
    for arg, column in (("type", NotificationTemplate.type), ("category", NotificationTemplate.category)):
        value = request.args.get(arg)
        if value:
            q = q.filter(column == value)
    return jsonify([t.to_dict() for t in q.order_by(NotificationTemplate.name).all()])


@templates_bp.route("/<int:template_id>", methods=["GET"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def get_template(template_id):
    return jsonify(_template_or_404(template_id).to_dict())


@templates_bp.route("", methods=["POST"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def create_template():
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("name", "subject", "content", "type") if not data.get(k)]
    if missing:
        raise ValidationError(f"Champs requis manquants : {', '.join(missing)}")
    if NotificationTemplate.query.filter_by(name=data["name"]).first():
        raise ValidationError(f"Le gabarit {data['name']} existe déjà")
    tpl = NotificationTemplate()
    _apply_template_fields(tpl, data)
    db.session.add(tpl)
    db.session.commit()
    current_app.logger.info("[NOTIF] gabarit créé %s", tpl.name)
    return jsonify({"success": True, "template": tpl.to_dict()}), 201


@templates_bp.route("/<int:template_id>", methods=["PUT"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def update_template(template_id):
    tpl = _template_or_404(template_id)
    data = request.get_json(silent=True) or {}
    if data.get("name") and data["name"] != tpl.name:
        if NotificationTemplate.query.filter_by(name=data["name"]).first():
            raise ValidationError(f"Le gabarit {data['name']} existe déjà")
    _apply_template_fields(tpl, data)
    db.session.commit()
    return jsonify({"success": True, "template": tpl.to_dict()})


@templates_bp.route("/<int:template_id>", methods=["DELETE"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def delete_template(template_id):
    tpl = _template_or_404(template_id)
    db.session.delete(tpl)
    db.session.commit()
    return jsonify({"success": True, "message": "Gabarit supprimé"})


@templates_bp.route("/<int:template_id>/activate", methods=["PUT"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def activate_template(template_id):
    tpl = _template_or_404(template_id)
    tpl.is_active = True
    db.session.commit()
    return jsonify({"success": True, "template": tpl.to_dict()})


@templates_bp.route("/<int:template_id>/deactivate", methods=["PUT"])
@login_required
@require_permission(NOTIFICATION_MANAGE_ALL)
def deactivate_template(template_id):
    tpl = _template_or_404(template_id)
    tpl.is_active = False
    db.session.commit()
    return jsonify({"success": True, "template": tpl.to_dict()})
