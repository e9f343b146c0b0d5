"""
Endpoints de alta de doctores, pacientes y especialidades.
"""

from fastapi import APIRouter, Depends, Response, status

from turnos.api.deps import get_store
from turnos.auth.dependencies import get_actor, require_permission
from turnos.core.security import Actor
from turnos.schemas.doctor import DoctorCreate, DoctorResponse, DoctorStateChange
from turnos.schemas.patient import FederatedUidLink, PatientCreate, PatientResponse
from turnos.schemas.specialty import SpecialtyCreate, SpecialtyResponse
from turnos.services import registry_service
from turnos.store import EntityStore

doctors_router = APIRouter()
patients_router = APIRouter()
specialties_router = APIRouter()


# ── Doctores ─────────────────────────────────────────

@doctors_router.post("", response_model=DoctorResponse, status_code=status.HTTP_201_CREATED)
async def register_doctor(
    data: DoctorCreate,
    actor: Actor = Depends(require_permission("doctor", "create")),
    store: EntityStore = Depends(get_store),
):
    """Crea usuario + doctor. 404 si la especialidad no existe, 409 si email o matrícula ya existen."""
    return await registry_service.register_doctor(store, actor, data)


@doctors_router.patch("/{doctor_id}/state", response_model=DoctorResponse)
async def set_doctor_state(
    doctor_id: int,
    data: DoctorStateChange,
    actor: Actor = Depends(require_permission("doctor", "update")),
    store: EntityStore = Depends(get_store),
):
    return await registry_service.set_doctor_state(store, actor, doctor_id, data.state)


# ── Pacientes ────────────────────────────────────────

@patients_router.post("", response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
async def register_patient(
    data: PatientCreate,
    actor: Actor = Depends(require_permission("patient", "create")),
    store: EntityStore = Depends(get_store),
):
    return await registry_service.register_patient(store, actor, data)


@patients_router.put("/{patient_id}/federated-uid", response_model=PatientResponse)
async def link_federated_uid(
    patient_id: int,
    data: FederatedUidLink,
    actor: Actor = Depends(require_permission("patient", "link_federated")),
    store: EntityStore = Depends(get_store),
):
    """Vincula el UID del login social; 409 si ya pertenece a otro paciente."""
    return await registry_service.link_federated_uid(store, actor, patient_id, data.federated_uid)


# ── Especialidades ───────────────────────────────────

@specialties_router.get("", response_model=list[SpecialtyResponse])
async def list_specialties(
    actor: Actor = Depends(get_actor),
    store: EntityStore = Depends(get_store),
):
    return await registry_service.list_specialties(store)


@specialties_router.post("", response_model=SpecialtyResponse, status_code=status.HTTP_201_CREATED)
async def create_specialty(
    data: SpecialtyCreate,
    actor: Actor = Depends(require_permission("specialty", "create")),
    store: EntityStore = Depends(get_store),
):
    return await registry_service.create_specialty(store, actor, data)


@specialties_router.delete("/{specialty_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_specialty(
    specialty_id: int,
    actor: Actor = Depends(require_permission("specialty", "delete")),
    store: EntityStore = Depends(get_store),
):
    await registry_service.delete_specialty(store, actor, specialty_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
