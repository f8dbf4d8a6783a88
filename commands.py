# commands.py — commandes `flask …` (init-db, seed, create-admin)
import os

import click
from flask.cli import with_appcontext
from werkzeug.security import generate_password_hash

from models import db, User
from seeds import seed_all


@click.command("init-db")
@click.option("--drop", is_flag=True, help="Supprime les tables existantes avant création.")
@with_appcontext
def init_db(drop):
    """Crée les tables (et les supprime d'abord avec --drop)."""
    if drop:
        click.echo("⚠️  Suppression des tables existantes…")
        db.drop_all()
    db.create_all()
    click.echo("✅ Tables créées")


@click.command("seed")
@with_appcontext
def seed():
    """Permissions, permissions de rôle, gabarits de notification et spécialités (idempotent)."""
    db.create_all()
    counts = seed_all()
    click.echo("Seed OK — " + ", ".join(f"{k}+{v}" for k, v in counts.items()))


@click.command("create-admin")
@click.option("--email", default=lambda: os.environ.get("ADMIN_EMAIL", "admin@medirdv.local"))
@click.option("--name", default=lambda: os.environ.get("ADMIN_NAME", "Administrateur"))
@click.option("--password", default=lambda: os.environ.get("ADMIN_PASSWORD"), required=True)
@with_appcontext
def create_admin(email, name, password):
    """Crée le compte administrateur ou réinitialise son mot de passe."""
    db.create_all()
    admin = User.query.filter_by(email=email).first()
    if admin:
        admin.password_hash = generate_password_hash(password)
        admin.role = "admin"
        admin.status = "active"
        click.echo(f"🔑 Administrateur {email} mis à jour")
    else:
        db.session.add(User(
            name=name, email=email, role="admin", status="active",
            password_hash=generate_password_hash(password),
        ))
        click.echo(f"✅ Administrateur {email} créé")
    db.session.commit()


def register_commands(app):
    for cmd in (init_db, seed, create_admin):
        app.cli.add_command(cmd)
