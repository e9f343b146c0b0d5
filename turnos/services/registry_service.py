"""
Alta y mantenimiento de doctores, pacientes y especialidades.
Cada operación multi-tabla (user + doctor, user + paciente) es atómica.
"""

import logging

from sqlalchemy import func, select

from turnos.core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
)
from turnos.core.security import Actor
from turnos.models.doctor import Doctor
from turnos.models.patient import Patient
from turnos.models.specialty import Specialty
from turnos.models.user import RecordState, User, UserRole
from turnos.schemas.doctor import DoctorCreate, DoctorResponse
from turnos.schemas.patient import PatientCreate, PatientResponse
from turnos.schemas.specialty import SpecialtyCreate, SpecialtyResponse
from turnos.store import EntityStore, StoreTransaction

logger = logging.getLogger(__name__)


async def _ensure_email_free(tx: StoreTransaction, email: str) -> None:
    result = await tx.session.execute(select(User.id).where(User.email == email))
    if result.scalar_one_or_none() is not None:
        raise ConflictException(f"Email {email} ya está registrado")


# ── Doctores ─────────────────────────────────────────
async def register_doctor(store: EntityStore, actor: Actor, data: DoctorCreate) -> DoctorResponse:
    """Crea el usuario y el perfil de doctor en una sola transacción."""
    async with store.transaction(actor) as tx:
        specialty = await tx.find_by_id(Specialty, data.specialty_id)
        if specialty is None:
            raise NotFoundException("Especialidad")

        await _ensure_email_free(tx, data.email)
        result = await tx.session.execute(
            select(Doctor.id).where(Doctor.license_number == data.license_number)
        )
        if result.scalar_one_or_none() is not None:
            raise ConflictException(f"Matrícula {data.license_number} ya está registrada")

        user = await tx.create(
            User(
                email=data.email,
                first_name=data.first_name,
                last_name=data.last_name,
                national_id=data.national_id,
                role=UserRole.DOCTOR,
            )
        )
        doctor = await tx.create(
            Doctor(
                user=user,
                specialty=specialty,
                license_number=data.license_number,
                consult_fee=data.consult_fee,
                phone=data.phone,
                availability=data.availability,
            )
        )

    logger.info(f"Doctor {doctor.id} registrado (usuario {user.id})")
    return DoctorResponse.model_validate(doctor)


async def set_doctor_state(
    store: EntityStore,
    actor: Actor,
    doctor_id: int,
    state: RecordState,
) -> DoctorResponse:
    """Activa o desactiva (soft-delete) un doctor."""
    async with store.transaction(actor) as tx:
        doctor = await tx.find_by_id(Doctor, doctor_id, for_update=True)
        if doctor is None:
            raise NotFoundException("Doctor")
        if doctor.state != state:
            await tx.update(doctor, state=state)
            logger.info(f"Doctor {doctor_id} pasa a estado {state.value}")

    return DoctorResponse.model_validate(doctor)


# ── Pacientes ────────────────────────────────────────
async def register_patient(store: EntityStore, actor: Actor, data: PatientCreate) -> PatientResponse:
    """Crea el usuario y el perfil de paciente en una sola transacción."""
    async with store.transaction(actor) as tx:
        await _ensure_email_free(tx, data.email)
        if data.federated_uid:
            await _ensure_federated_uid_free(tx, data.federated_uid)

        user = await tx.create(
            User(
                email=data.email,
                first_name=data.first_name,
                last_name=data.last_name,
                national_id=data.national_id,
                role=UserRole.PATIENT,
            )
        )
        patient = await tx.create(
            Patient(
                user=user,
                phone=data.phone,
                birth_date=data.birth_date,
                blood_type=data.blood_type,
                allergies=data.allergies,
                chronic_conditions=data.chronic_conditions,
                medications=data.medications,
                emergency_contact=data.emergency_contact,
                emergency_phone=data.emergency_phone,
                federated_uid=data.federated_uid,
                appointment_count=0,
            )
        )

    logger.info(f"Paciente {patient.id} registrado (usuario {user.id})")
    return PatientResponse.model_validate(patient)


async def _ensure_federated_uid_free(
    tx: StoreTransaction, uid: str, exclude_patient_id: int | None = None
) -> None:
    query = select(Patient.id).where(Patient.federated_uid == uid)
    if exclude_patient_id is not None:
        query = query.where(Patient.id != exclude_patient_id)
    result = await tx.session.execute(query)
    if result.scalar_one_or_none() is not None:
        raise ConflictException("El UID federado ya está vinculado a otro paciente")


async def link_federated_uid(
    store: EntityStore,
    actor: Actor,
    patient_id: int,
    uid: str,
) -> PatientResponse:
    """Vincula el UID del proveedor de login externo al paciente."""
    async with store.transaction(actor) as tx:
        patient = await tx.find_by_id(Patient, patient_id, for_update=True)
        if patient is None:
            raise NotFoundException("Paciente")
        if actor.role == UserRole.PATIENT and patient.user_id != actor.user_id:
            raise ForbiddenException("Un paciente solo puede vincular su propia cuenta")

        if patient.federated_uid != uid:
            await _ensure_federated_uid_free(tx, uid, exclude_patient_id=patient.id)
            await tx.update(patient, federated_uid=uid)

    return PatientResponse.model_validate(patient)


# ── Especialidades ───────────────────────────────────
async def create_specialty(store: EntityStore, actor: Actor, data: SpecialtyCreate) -> SpecialtyResponse:
    async with store.transaction(actor) as tx:
        result = await tx.session.execute(
            select(Specialty.id).where(func.lower(Specialty.name) == data.name.lower())
        )
        if result.scalar_one_or_none() is not None:
            raise ConflictException(f"La especialidad '{data.name}' ya existe")
        specialty = await tx.create(Specialty(name=data.name, description=data.description))

    return SpecialtyResponse.model_validate(specialty)


async def delete_specialty(store: EntityStore, actor: Actor, specialty_id: int) -> None:
    """Borra una especialidad sin doctores asignados."""
    async with store.transaction(actor) as tx:
        specialty = await tx.find_by_id(Specialty, specialty_id, for_update=True)
        if specialty is None:
            raise NotFoundException("Especialidad")
        result = await tx.session.execute(
            select(func.count(Doctor.id)).where(Doctor.specialty_id == specialty_id)
        )
        if result.scalar():
            raise ConflictException("La especialidad tiene doctores asignados")
        await tx.delete(specialty)

    logger.info(f"Especialidad {specialty_id} eliminada")


async def list_specialties(store: EntityStore) -> list[SpecialtyResponse]:
    async with store.session_factory() as session:
        result = await session.execute(select(Specialty).order_by(Specialty.name))
        return [SpecialtyResponse.model_validate(s) for s in result.scalars().all()]
