"""initial schema: users, specialties, doctors, patients, appointments,
payments, attachments, audit_log

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# ── Tipos enumerados ─────────────────────────────────
ENUMS = {
    "user_role": ("patient", "doctor", "admin"),
    "record_state": ("active", "inactive"),
    "blood_type": ("O+", "O-", "A+", "A-", "B+", "B-", "AB+", "AB-"),
    "appointment_state": ("pending", "confirmed", "completed", "cancelled"),
    "payment_method": ("cash", "card", "transfer", "gateway"),
    "payment_state": ("pending", "completed", "cancelled"),
    "audit_action": ("insert", "update", "delete"),
}


def _enum(name: str) -> postgresql.ENUM:
    # El tipo se crea una sola vez al inicio; las columnas solo lo referencian
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

    # ── users ────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("national_id", sa.String(32), nullable=True),
        sa.Column("role", _enum("user_role"), nullable=False),
        sa.Column("state", _enum("record_state"), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ── specialties ──────────────────────────────────
    op.create_table(
        "specialties",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
    )

    # ── doctors ──────────────────────────────────────
    op.create_table(
        "doctors",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer, sa.ForeignKey("users.id"),
            nullable=False, unique=True,
        ),
        sa.Column(
            "specialty_id", sa.Integer, sa.ForeignKey("specialties.id"), nullable=False
        ),
        sa.Column("license_number", sa.String(50), nullable=False, unique=True),
        sa.Column("consult_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("availability", sa.JSON, nullable=True),
        sa.Column("state", _enum("record_state"), nullable=False),
        sa.Column("next_available_slot", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_consultation", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_doctors_specialty_id", "doctors", ["specialty_id"])

    # ── patients ─────────────────────────────────────
    op.create_table(
        "patients",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer, sa.ForeignKey("users.id"),
            nullable=False, unique=True,
        ),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("birth_date", sa.Date, nullable=True),
        sa.Column("emergency_contact", sa.String(200), nullable=True),
        sa.Column("emergency_phone", sa.String(20), nullable=True),
        sa.Column("blood_type", _enum("blood_type"), nullable=True),
        sa.Column("allergies", sa.Text, nullable=True),
        sa.Column("chronic_conditions", sa.Text, nullable=True),
        sa.Column("medications", sa.Text, nullable=True),
        sa.Column("federated_uid", sa.String(128), nullable=True, unique=True),
        sa.Column("appointment_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_consultation", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "appointment_count >= 0",
            name="ck_patients_appointment_count_non_negative",
        ),
    )

    # ── appointments ─────────────────────────────────
    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("patient_id", sa.Integer, sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("doctor_id", sa.Integer, sa.ForeignKey("doctors.id"), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(500), nullable=False, server_default=""),
        sa.Column("state", _enum("appointment_state"), nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
    )
    # Un doctor no puede tener dos turnos no cancelados en el mismo horario
    op.create_index(
        "uq_appointments_doctor_slot_active",
        "appointments",
        ["doctor_id", "scheduled_at"],
        unique=True,
        postgresql_where=sa.text("state <> 'cancelled'"),
        sqlite_where=sa.text("state <> 'cancelled'"),
    )
    op.create_index(
        "idx_appointment_doctor_date", "appointments", ["doctor_id", "scheduled_at"]
    )
    op.create_index(
        "idx_appointment_patient", "appointments", ["patient_id", "scheduled_at"]
    )
    op.create_index("idx_appointment_state", "appointments", ["state"])
    op.create_index("idx_appointment_expires", "appointments", ["expires_at"])

    # ── payments ─────────────────────────────────────
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "appointment_id", sa.Integer, sa.ForeignKey("appointments.id"),
            nullable=False, unique=True,
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("method", _enum("payment_method"), nullable=False),
        sa.Column("state", _enum("payment_state"), nullable=False),
        sa.Column("gateway_reference", sa.String(100), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        *_timestamps(),
    )

    # ── attachments ──────────────────────────────────
    op.create_table(
        "attachments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "appointment_id", sa.Integer, sa.ForeignKey("appointments.id"), nullable=False
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("url", sa.String(1000), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_attachments_appointment_id", "attachments", ["appointment_id"])

    # ── audit_log (INSERT-only) ──────────────────────
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(36), nullable=False, unique=True),
        sa.Column("table_name", sa.String(50), nullable=False),
        sa.Column("action", _enum("audit_action"), nullable=False),
        sa.Column("record_id", sa.Integer, nullable=False),
        sa.Column("before_state", json_type, nullable=True),
        sa.Column("after_state", json_type, nullable=True),
        sa.Column("actor_user_id", sa.Integer, nullable=True),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_audit_table_record", "audit_log", ["table_name", "record_id", "occurred_at"]
    )
    op.create_index("idx_audit_occurred_at", "audit_log", ["occurred_at"])
    op.create_index("idx_audit_actor", "audit_log", ["actor_user_id", "occurred_at"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("attachments")
    op.drop_table("payments")
    op.drop_index("uq_appointments_doctor_slot_active", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("patients")
    op.drop_table("doctors")
    op.drop_table("specialties")
    op.drop_table("users")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in reversed(list(ENUMS)):
            postgresql.ENUM(name=name).drop(bind, checkfirst=True)
