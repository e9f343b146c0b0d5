"""
Modelos SQLAlchemy: exportar todos para que Alembic los detecte.
"""

from turnos.models.user import RecordState, User, UserRole
from turnos.models.specialty import Specialty
from turnos.models.doctor import Doctor
from turnos.models.patient import BloodType, Patient
from turnos.models.appointment import Appointment, AppointmentState
from turnos.models.payment import Payment, PaymentMethod, PaymentState
from turnos.models.attachment import Attachment
from turnos.models.audit_log import AuditAction, AuditLog

__all__ = [
    "User",
    "UserRole",
    "RecordState",
    "Specialty",
    "Doctor",
    "Patient",
    "BloodType",
    "Appointment",
    "AppointmentState",
    "Payment",
    "PaymentMethod",
    "PaymentState",
    "Attachment",
    "AuditLog",
    "AuditAction",
]
