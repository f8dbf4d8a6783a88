# notifications.py
# Notifications en base (gabarits {{variable}}), envoi d'e-mails via SMTP, effets post-commit.

import os
import re
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy import event
from sqlalchemy.orm import Session

from models import db, Notification, NotificationTemplate, User

# Gabarits utilisés par les flux métier (créés par `flask seed`)
TPL_APPOINTMENT_CREATED = "appointment_created"
TPL_APPOINTMENT_CREATED_DOCTOR = "appointment_created_doctor"
TPL_APPOINTMENT_STATUS_CHANGED = "appointment_status_changed"
TPL_APPOINTMENT_CANCELED = "appointment_canceled"
TPL_ABSENCE_APPROVED = "absence_approved"
TPL_ABSENCE_APPROVED_PATIENT = "absence_approved_patient"
TPL_ABSENCE_REJECTED = "absence_rejected"

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


# -------- Helpers --------
def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on", "y"}

def _split_recipients(value: str) -> List[str]:
    parts = []
    for chunk in (value or "").replace(";", ",").split(","):
        c = chunk.strip()
        if c:
            parts.append(c)
    return list(dict.fromkeys(parts))

def _choose_port(use_ssl: bool, use_tls: bool, env_port: Optional[str]) -> int:
    if env_port:
        try:
            return int(env_port)
        except ValueError:
            pass
    if use_ssl:
        return 465
    if use_tls:
        return 587
    return 25

def _smtp_settings() -> dict:
    # EMAIL_* prioritaires, MAIL_* en repli
    use_ssl = _env_bool("EMAIL_USE_SSL", _env_bool("MAIL_USE_SSL", False))
    use_tls = _env_bool("EMAIL_USE_TLS", _env_bool("MAIL_USE_TLS", True))
    username = os.getenv("EMAIL_USER") or os.getenv("MAIL_USERNAME")
    brand = current_app.config.get("BRAND_NAME", "MediRDV")
    return {
        "enabled": current_app.config.get("EMAIL_ENABLED", _env_bool("EMAIL_ENABLED", True)),
        "host": os.getenv("EMAIL_HOST") or os.getenv("MAIL_SERVER"),
        "port": _choose_port(use_ssl, use_tls, os.getenv("EMAIL_PORT") or os.getenv("MAIL_PORT")),
        "use_ssl": use_ssl,
        "use_tls": use_tls,
        "username": username,
        "password": os.getenv("EMAIL_PASS") or os.getenv("MAIL_PASSWORD"),
        "sender": os.getenv("EMAIL_FROM") or os.getenv("MAIL_DEFAULT_SENDER") or username,
        "from_name": os.getenv("EMAIL_FROM_NAME") or os.getenv("MAIL_FROM_NAME") or brand,
        "reply_to": os.getenv("EMAIL_REPLY_TO") or os.getenv("MAIL_REPLY_TO"),
    }


# -------- E-mail --------
def _build_message(cfg: dict, to_addresses: Iterable[str], subject: str, body_text: str,
                   body_html: Optional[str] = None) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f"{cfg['from_name']} <{cfg['sender']}>" if cfg["from_name"] else cfg["sender"]
    msg["To"] = ", ".join(to_addresses)
    msg["Subject"] = subject
    if cfg["reply_to"]:
        msg["Reply-To"] = cfg["reply_to"]
    msg.set_content(body_text or "")
    if body_html:
        msg.add_alternative(body_html, subtype="html")
    return msg

def _send_via_smtp(cfg: dict, msg: EmailMessage) -> bool:
    log = current_app.logger
    if not cfg["enabled"]:
        log.info("[NOTIF][EMAIL] désactivé (EMAIL_ENABLED=false) — skip → %s : %s", msg["To"], msg["Subject"])
        return False
    if not (cfg["host"] and cfg["username"] and cfg["password"] and cfg["sender"]):
        log.warning("[NOTIF][EMAIL] configuration SMTP incomplète (EMAIL_HOST/USER/PASS/FROM) — skip → %s", msg["To"])
        return False

    try:
        if cfg["use_ssl"]:
            with smtplib.SMTP_SSL(cfg["host"], cfg["port"], context=ssl.create_default_context(), timeout=20) as s:
                s.login(cfg["username"], cfg["password"])
                s.send_message(msg)
        else:
            with smtplib.SMTP(cfg["host"], cfg["port"], timeout=20) as s:
                s.ehlo()
                if cfg["use_tls"]:
                    s.starttls(context=ssl.create_default_context())
                    s.ehlo()
                s.login(cfg["username"], cfg["password"])
                s.send_message(msg)
        log.info("[NOTIF][EMAIL] envoyé → %s : %s", msg["To"], msg["Subject"])
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.error("[NOTIF][EMAIL] échec → %s : %s", msg["To"], e)
        return False

def send_email(email: str, subject: str, body: str, html: Optional[str] = None) -> bool:
    recipients = _split_recipients(email)
    if not recipients:
        current_app.logger.warning("[NOTIF][EMAIL] destinataire manquant — %s", subject)
        return False
    cfg = _smtp_settings()
    return _send_via_smtp(cfg, _build_message(cfg, recipients, subject, body, html))


# -------- Gabarits --------
def render_template_vars(text: Optional[str], variables: Optional[dict]) -> str:
    """Remplace chaque {{cle}} connue; les clés inconnues restent telles quelles."""
    if not text:
        return text or ""
    variables = variables or {}

    def _sub(match):
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_sub, text)

def find_template(name: str) -> Optional[NotificationTemplate]:
    return NotificationTemplate.query.filter_by(name=name, is_active=True).first()


# -------- Dispatch --------
def create_notification(user_id: int, *, type: str, title: str, content: str,
                        priority: str = "normal", channel: str = "in-app",
                        template_id: Optional[int] = None,
                        related_entity_type: Optional[str] = None,
                        related_entity_id: Optional[int] = None,
                        metadata: Optional[dict] = None) -> Notification:
    notif = Notification(
        user_id=user_id,
        type=type,
        title=title,
        content=content,
        priority=priority,
        channel=channel,
        delivery_status="delivered" if channel == "in-app" else "pending",
        template_id=template_id,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        meta=dict(metadata or {}),
    )
    db.session.add(notif)
    return notif

def dispatch(template_name: str, recipients: Iterable[int], variables: Optional[dict] = None, *,
             related_entity_type: Optional[str] = None, related_entity_id: Optional[int] = None,
             guest_emails: Iterable[str] = (), priority: Optional[str] = None,
             channel: Optional[str] = None) -> List[Notification]:
    """Crée une notification par destinataire à partir d'un gabarit actif.

    Gabarit absent ou inactif : rien n'est créé (journalisé, pas d'exception).
    Les invités (sans compte) ne reçoivent que l'e-mail.
    """
    log = current_app.logger
    tpl = find_template(template_name)
    if tpl is None:
        log.warning("[NOTIF] gabarit introuvable ou inactif: %s", template_name)
        return []

    subject = render_template_vars(tpl.subject, variables)
    content = render_template_vars(tpl.content, variables)
    channel = channel or tpl.default_channel
    priority = priority or tpl.default_priority

    created = []
    for user_id in dict.fromkeys(r for r in recipients if r is not None):
        notif = create_notification(
            user_id,
            type=tpl.type,
            title=subject,
            content=content,
            priority=priority,
            channel=channel,
            template_id=tpl.id,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            metadata={"template": tpl.name, "variables": {k: str(v) for k, v in (variables or {}).items()}},
        )
        if channel == "email":
            user = db.session.get(User, user_id)
            ok = send_email(user.email if user else "", subject, content)
            notif.delivery_status = "sent" if ok else "failed"
        created.append(notif)

    for email in guest_emails:
        if email:
            send_email(email, subject, content)

    db.session.flush()
    log.info("[NOTIF] %s → %d notification(s)", template_name, len(created))
    return created


# -------- Effets post-commit --------
_HOOKS_KEY = "post_commit_hooks"

def after_commit(fn, *args, **kwargs) -> None:
    """Programme un effet de bord exécuté seulement après le prochain commit réussi."""
    db.session.info.setdefault(_HOOKS_KEY, []).append((fn, args, kwargs))

def commit() -> None:
    """Commit de l'opération principale puis exécution isolée des effets programmés.

    Un effet en échec est annulé et journalisé; il ne remonte jamais à l'appelant.
    """
    hooks = db.session.info.pop(_HOOKS_KEY, [])
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    for fn, args, kwargs in hooks:
        try:
            fn(*args, **kwargs)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("[NOTIF] effet post-commit en échec (%s): %s",
                                         getattr(fn, "__name__", fn), e)

@event.listens_for(Session, "after_soft_rollback")
def _drop_hooks_on_rollback(session, previous_transaction):
    session.info.pop(_HOOKS_KEY, None)
