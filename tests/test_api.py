"""Tests de los endpoints HTTP: códigos de estado, cuerpo de error y autorización."""

from datetime import timedelta

from httpx import AsyncClient

from turnos.models.user import UserRole


def _booking(patient, doctor, when) -> dict:
    return {
        "patient_id": patient.id,
        "doctor_id": doctor.id,
        "scheduled_at": when.isoformat(),
        "reason": "Dolor de cabeza",
    }


async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data


async def test_missing_token_is_unauthorized(client: AsyncClient, patient, doctor, slot) -> None:
    response = await client.post("/api/v1/appointments", json=_booking(patient, doctor, slot))
    assert response.status_code == 401
    assert response.json()["kind"] == "unauthorized"


async def test_invalid_token_is_unauthorized(client: AsyncClient) -> None:
    response = await client.get(
        "/api/v1/appointments", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


async def test_book_and_conflict(client: AsyncClient, admin_headers, patient, patient2, doctor, slot) -> None:
    response = await client.post(
        "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
    )
    assert response.status_code == 201
    data = response.json()
    assert data["state"] == "pending"
    assert data["version"] == 1

    response = await client.post(
        "/api/v1/appointments", json=_booking(patient2, doctor, slot), headers=admin_headers
    )
    assert response.status_code == 409
    assert response.json()["kind"] == "slot_unavailable"


async def test_book_unknown_doctor(client: AsyncClient, admin_headers, patient, doctor, slot) -> None:
    payload = _booking(patient, doctor, slot)
    payload["doctor_id"] = 999
    response = await client.post("/api/v1/appointments", json=payload, headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["kind"] == "not_found"


async def test_book_requires_timezone(client: AsyncClient, admin_headers, patient, doctor, slot) -> None:
    payload = _booking(patient, doctor, slot.replace(tzinfo=None))
    response = await client.post("/api/v1/appointments", json=payload, headers=admin_headers)
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


async def test_book_without_reason(client: AsyncClient, admin_headers, patient, doctor, slot) -> None:
    payload = _booking(patient, doctor, slot)
    del payload["reason"]
    response = await client.post("/api/v1/appointments", json=payload, headers=admin_headers)
    assert response.status_code == 201
    assert response.json()["reason"] == ""


async def test_cancel_flow(client: AsyncClient, admin_headers, patient, doctor, slot) -> None:
    created = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()

    response = await client.delete(
        f"/api/v1/appointments/{created['id']}",
        params={"reason": "Viaje"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["state"] == "cancelled"
    assert response.json()["notes"] == "Viaje"

    response = await client.delete(f"/api/v1/appointments/{created['id']}", headers=admin_headers)
    assert response.status_code == 409
    assert response.json()["kind"] == "already_cancelled"


async def test_confirm_complete_and_repeat(client: AsyncClient, admin_headers, patient, doctor, slot) -> None:
    created = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()
    base = f"/api/v1/appointments/{created['id']}"

    assert (await client.patch(f"{base}/confirm", headers=admin_headers)).status_code == 200
    response = await client.patch(f"{base}/complete", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["state"] == "completed"

    response = await client.patch(f"{base}/complete", headers=admin_headers)
    assert response.status_code == 409
    assert response.json()["kind"] == "invalid_transition"


async def test_stale_version_is_constraint_violation(client: AsyncClient, admin_headers, patient, doctor, slot) -> None:
    created = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()

    response = await client.patch(
        f"/api/v1/appointments/{created['id']}/confirm",
        params={"expected_version": created["version"] + 5},
        headers=admin_headers,
    )
    assert response.status_code == 409
    assert response.json()["kind"] == "constraint_violation"


async def test_reassign_doctor(client: AsyncClient, admin_headers, patient, doctor, doctor2, slot) -> None:
    created = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()

    response = await client.patch(
        f"/api/v1/appointments/{created['id']}/doctor",
        json={"new_doctor_id": doctor2.id},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["doctor_id"] == doctor2.id

    response = await client.patch(
        f"/api/v1/appointments/{created['id']}/doctor",
        json={"new_doctor_id": doctor2.id},
        headers=admin_headers,
    )
    assert response.status_code == 422


async def test_patient_cannot_reassign(client: AsyncClient, make_headers, admin_headers, patient, doctor, doctor2, slot) -> None:
    created = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()

    response = await client.patch(
        f"/api/v1/appointments/{created['id']}/doctor",
        json={"new_doctor_id": doctor2.id},
        headers=make_headers(patient.user_id, UserRole.PATIENT),
    )
    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"


async def test_patient_sees_only_own_appointments(client: AsyncClient, make_headers, admin_headers, patient, patient2, doctor, slot) -> None:
    own = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()
    other = (
        await client.post(
            "/api/v1/appointments",
            json=_booking(patient2, doctor, slot + timedelta(hours=1)),
            headers=admin_headers,
        )
    ).json()
    headers = make_headers(patient.user_id, UserRole.PATIENT)

    listing = (await client.get("/api/v1/appointments", headers=headers)).json()
    assert [a["id"] for a in listing["items"]] == [own["id"]]

    response = await client.get(f"/api/v1/appointments/{other['id']}", headers=headers)
    assert response.status_code == 403


async def test_audit_endpoints(client: AsyncClient, admin_headers, make_headers, patient, doctor, slot) -> None:
    created = (
        await client.post(
            "/api/v1/appointments", json=_booking(patient, doctor, slot), headers=admin_headers
        )
    ).json()
    await client.delete(f"/api/v1/appointments/{created['id']}", headers=admin_headers)

    response = await client.get(f"/api/v1/audit/appointment/{created['id']}", headers=admin_headers)
    assert response.status_code == 200
    summary = response.json()
    assert summary["fue_cancelado"] is True
    assert summary["estadoCambios"][0]["from_state"] == "pending"
    assert summary["estadoCambios"][0]["to_state"] == "cancelled"

    response = await client.get(f"/api/v1/audit/appointments/{created['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["total_changes"] == 2

    response = await client.get("/api/v1/audit/recent/payments", headers=admin_headers)
    assert response.status_code == 422

    response = await client.get(
        "/api/v1/audit/previous/appointments/999", headers=admin_headers
    )
    assert response.status_code == 404

    for path in ("anomalies", "stats", "dashboard", "validate"):
        assert (await client.get(f"/api/v1/audit/{path}", headers=admin_headers)).status_code == 200

    response = await client.get(
        "/api/v1/audit/anomalies", headers=make_headers(patient.user_id, UserRole.PATIENT)
    )
    assert response.status_code == 403
