from datetime import datetime

import pytest
from sqlmodel import select
from starlette.datastructures import UploadFile

from conftest import FakeSocket, bearer
from models import Appointment, AppointmentStatus, AuditAction, AuditLog, Patient, StockItem, UserType
from services import stock_service
from services.notification_bus import ConnectedUser, notification_bus
from services.report_storage import MAX_REPORT_SIZE

SCHEDULED_AT = "2030-01-01T10:00:00Z"
PDF = b"%PDF-1.4\n%test report\n"


@pytest.fixture
def xray_scan(make_scan):
    return make_scan(name="Chest X-Ray", actual_cost=100, min_price=250, items=[{"item": "X-Ray Film", "quantity": 2}])


@pytest.fixture
def film(make_stock, branch):
    return make_stock(branch, name="X-Ray Film", quantity=10, minimum_threshold=2)


@pytest.fixture
def receptionist(make_user):
    return make_user(UserType.RECEPTIONIST, username="front", privileges={"appointments": ["delete"]})


def _payload(radiologist, patient, branch, scan, **overrides):
    body = {
        "radiologistId": radiologist.id,
        "patientId": patient.id,
        "branchId": branch.id,
        "scans": [{"scan": scan.id, "quantity": 1}],
        "scheduledAt": SCHEDULED_AT,
    }
    body.update(overrides)
    return body


def _complete(client, headers, appointment_id, content=PDF, content_type="application/pdf"):
    return client.patch(
        f"/api/appointments/{appointment_id}/status",
        headers=headers,
        data={"status": "completed"},
        files={"pdfFile": ("report.pdf", content, content_type)},
    )


def test_happy_path_create_and_complete(client, session, receptionist, radiologist, patient, branch, doctor, xray_scan, film):
    socket = FakeSocket()
    notification_bus.active_connections[radiologist.id] = ConnectedUser(
        user_id=radiologist.id, user_name=radiologist.name, websocket=socket
    )
    headers = bearer(receptionist)

    response = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    assert response.status_code == 201
    data = response.json()["data"]
    assert (data["cost"], data["price"], data["profit"]) == (100, 250, 150)
    assert data["status"] == "scheduled"
    assert data["referredBy"] == doctor.id
    assert data["scheduledAt"] == "2030-01-01T10:00:00.000Z"
    appointment_id = data["id"]

    session.refresh(doctor)
    assert doctor.total_scans_referred == 1

    assert [event["type"] for event in socket.sent] == ["new_appointment"]
    assert socket.sent[0]["data"]["appointmentId"] == appointment_id
    assert socket.sent[0]["data"]["scans"][0]["name"] == "Chest X-Ray"

    completed = _complete(client, bearer(radiologist), appointment_id)
    assert completed.status_code == 200
    assert completed.json()["data"]["status"] == "completed"
    assert completed.json()["data"]["pdfReport"].startswith("/uploads/reports/")

    session.refresh(film)
    assert film.quantity == 8

    actions = session.exec(
        select(AuditLog).where(AuditLog.entity_id == appointment_id).order_by(AuditLog.created_at)
    ).all()
    assert [a.action for a in actions] == [AuditAction.CREATE, AuditAction.STATUS_CHANGE]
    deduction = actions[1].changes["stockDeduction"]
    assert deduction["success"] is True
    assert deduction["itemsDeducted"] == 1
    assert deduction["totalQuantityDeducted"] == 2

    report = client.get(f"/api/appointments/{appointment_id}/report", headers=bearer(receptionist))
    assert report.status_code == 200
    assert report.content == PDF


def test_slot_conflict(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    first = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    assert first.status_code == 201

    second = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    assert second.status_code == 409
    assert second.json()["message"] == "Time slot is already booked"


def test_cancelled_appointment_frees_the_slot(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    first = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    cancelled = client.patch(
        f"/api/appointments/{first.json()['data']['id']}/status",
        headers=headers,
        json={"status": "cancelled", "cancellationReason": "Patient called"},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["cancellationReason"] == "Patient called"

    again = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    assert again.status_code == 201


def test_insufficient_stock_on_completion(client, session, receptionist, radiologist, patient, branch, xray_scan, film):
    created = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, xray_scan)
    )
    appointment_id = created.json()["data"]["id"]

    film.quantity = 1
    session.add(film)
    session.commit()

    response = _complete(client, bearer(radiologist), appointment_id)
    assert response.status_code == 400
    assert "X-Ray Film" in response.json()["message"]
    assert "Insufficient quantity" in response.json()["message"]

    session.expire_all()
    assert session.get(Appointment, appointment_id).status == AppointmentStatus.SCHEDULED
    assert session.get(StockItem, film.id).quantity == 1


def test_completion_keeps_stock_at_minimum_threshold(client, session, receptionist, radiologist, patient, branch, xray_scan, film):
    created = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, xray_scan)
    )
    appointment_id = created.json()["data"]["id"]

    film.quantity = 3
    session.add(film)
    session.commit()

    response = _complete(client, bearer(radiologist), appointment_id)
    assert response.status_code == 400
    assert "X-Ray Film - Insufficient quantity" in response.json()["message"]

    session.expire_all()
    stored = session.get(StockItem, film.id)
    assert stored.quantity == 3
    assert stored.minimum_threshold <= stored.quantity
    assert session.get(Appointment, appointment_id).status == AppointmentStatus.SCHEDULED


def test_partial_deduction_still_completes(
    client, session, receptionist, radiologist, patient, branch, make_scan, make_stock, film, monkeypatch
):
    scan = make_scan(name="Contrast CT", actual_cost=100, min_price=250,
                     items=[{"item": "X-Ray Film", "quantity": 2}, {"item": "Contrast", "quantity": 1}])
    contrast = make_stock(branch, name="Contrast", quantity=10, minimum_threshold=2)
    created = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, scan)
    )
    appointment_id = created.json()["data"]["id"]

    real_decrement = stock_service._decrement

    def decrement_except_contrast(session, stock_item, amount):
        if stock_item.name == "Contrast":
            return False
        return real_decrement(session, stock_item, amount)

    monkeypatch.setattr(stock_service, "_decrement", decrement_except_contrast)

    response = _complete(client, bearer(radiologist), appointment_id)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "completed"

    session.expire_all()
    assert session.get(Appointment, appointment_id).status == AppointmentStatus.COMPLETED
    assert session.get(StockItem, film.id).quantity == 8
    assert session.get(StockItem, contrast.id).quantity == 10

    record = session.exec(
        select(AuditLog).where(AuditLog.entity_id == appointment_id, AuditLog.action == AuditAction.STATUS_CHANGE)
    ).one()
    deduction = record.changes["stockDeduction"]
    assert deduction["success"] is False
    assert deduction["itemsDeducted"] == 1
    assert deduction["totalQuantityDeducted"] == 2
    assert len(deduction["errors"]) == 1
    assert deduction["errors"][0].startswith("Insufficient stock for Contrast")


def test_completion_closes_the_uploaded_report(client, receptionist, radiologist, patient, branch, xray_scan, film, monkeypatch):
    created = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, xray_scan)
    )
    closed = []
    real_close = UploadFile.close

    async def tracking_close(self):
        closed.append(self.filename)
        await real_close(self)

    monkeypatch.setattr(UploadFile, "close", tracking_close)

    response = _complete(client, bearer(radiologist), created.json()["data"]["id"])
    assert response.status_code == 200
    assert "report.pdf" in closed


@pytest.mark.parametrize("status", ["scheduled", "confirmed", "in_progress"])
def test_patient_with_open_appointment_cannot_be_deleted(
    client, session, admin_headers, receptionist, radiologist, patient, branch, xray_scan, film, status
):
    headers = bearer(receptionist)
    created = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    appointment_id = created.json()["data"]["id"]
    if status != "scheduled":
        moved = client.patch(f"/api/appointments/{appointment_id}/status", headers=headers, json={"status": status})
        assert moved.status_code == 200

    response = client.delete(f"/api/patients/{patient.id}", headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Cannot delete patient with active appointments"

    session.expire_all()
    assert session.get(Patient, patient.id).is_active is True


def test_patient_can_be_deleted_once_appointments_are_closed(
    client, session, admin_headers, receptionist, radiologist, patient, branch, xray_scan, film
):
    headers = bearer(receptionist)
    created = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    client.patch(f"/api/appointments/{created.json()['data']['id']}/status", headers=headers, json={"status": "no-show"})

    assert client.delete(f"/api/patients/{patient.id}", headers=admin_headers).status_code == 200
    session.expire_all()
    assert session.get(Patient, patient.id).is_active is False


def test_create_fails_when_stock_is_missing(client, receptionist, radiologist, patient, branch, xray_scan):
    response = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, xray_scan)
    )
    assert response.status_code == 400
    assert "Item not found in stock" in response.json()["message"]


def test_huge_sale_requires_privilege(client, make_user, receptionist, radiologist, patient, branch, xray_scan, film):
    body = _payload(radiologist, patient, branch, xray_scan, makeHugeSale=True, customPrice=999)
    response = client.post("/api/appointments", headers=bearer(receptionist), json=body)
    assert response.status_code == 403
    assert response.json()["message"] == "You do not have permission to make huge sales"

    seller = make_user(username="seller", privileges={"appointments": ["create", "makeHugeSale"]})
    response = client.post("/api/appointments", headers=bearer(seller), json=body)
    assert response.status_code == 201
    data = response.json()["data"]
    assert (data["price"], data["profit"]) == (999, 899)


def test_huge_sale_requires_positive_custom_price(client, make_user, radiologist, patient, branch, xray_scan, film):
    seller = make_user(username="seller", privileges={"appointments": ["create", "makeHugeSale"]})
    body = _payload(radiologist, patient, branch, xray_scan, makeHugeSale=True)
    response = client.post("/api/appointments", headers=bearer(seller), json=body)
    assert response.status_code == 400
    assert response.json()["field"] == "customPrice"


def test_scheduled_at_must_be_in_the_future(client, receptionist, radiologist, patient, branch, xray_scan, film):
    now = datetime.utcnow().isoformat() + "Z"
    response = client.post(
        "/api/appointments",
        headers=bearer(receptionist),
        json=_payload(radiologist, patient, branch, xray_scan, scheduledAt=now),
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "scheduledAt"


def test_unknown_references_are_not_found(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    missing = "f" * 24

    response = client.post("/api/appointments", headers=headers,
                           json=_payload(radiologist, patient, branch, xray_scan, radiologistId=missing))
    assert response.status_code == 404
    assert response.json()["message"] == "Radiologist not found"

    response = client.post("/api/appointments", headers=headers,
                           json=_payload(radiologist, patient, branch, xray_scan, scans=[{"scan": missing, "quantity": 1}]))
    assert response.status_code == 404


def test_inactive_radiologist_is_rejected(client, session, receptionist, radiologist, patient, branch, xray_scan, film):
    radiologist.is_active = False
    session.add(radiologist)
    session.commit()

    response = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, xray_scan)
    )
    assert response.status_code == 400
    assert response.json()["message"] == "Radiologist is not available"


def test_invalid_transitions(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    appointment_id = client.post(
        "/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan)
    ).json()["data"]["id"]

    assert client.patch(f"/api/appointments/{appointment_id}/status", headers=headers,
                        json={"status": "no-show"}).status_code == 200

    response = client.patch(f"/api/appointments/{appointment_id}/status", headers=headers,
                            json={"status": "scheduled"})
    assert response.status_code == 400
    assert response.json()["message"] == "Cannot transition from no-show to scheduled"

    response = client.patch(f"/api/appointments/{appointment_id}", headers=headers, json={"notes": "late"})
    assert response.status_code == 400


def test_cancelling_in_progress_requires_reason(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    appointment_id = client.post(
        "/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan)
    ).json()["data"]["id"]
    client.patch(f"/api/appointments/{appointment_id}/status", headers=headers, json={"status": "in_progress"})

    response = client.patch(f"/api/appointments/{appointment_id}/status", headers=headers, json={"status": "cancelled"})
    assert response.status_code == 400

    response = client.patch(f"/api/appointments/{appointment_id}/status", headers=headers,
                            json={"status": "cancelled", "notes": "Machine failure"})
    assert response.status_code == 200
    assert response.json()["data"]["cancelledBy"] == receptionist.id


def test_completion_requires_pdf(client, receptionist, radiologist, patient, branch, xray_scan, film):
    appointment_id = client.post(
        "/api/appointments", headers=bearer(receptionist), json=_payload(radiologist, patient, branch, xray_scan)
    ).json()["data"]["id"]
    headers = bearer(radiologist)

    response = client.patch(f"/api/appointments/{appointment_id}/status", headers=headers, json={"status": "completed"})
    assert response.status_code == 400
    assert response.json()["field"] == "pdfFile"

    response = _complete(client, headers, appointment_id, content=b"hello", content_type="text/plain")
    assert response.status_code == 400
    assert response.json()["message"] == "Only PDF files are allowed"


def test_report_size_limit(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    first = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    second = client.post("/api/appointments", headers=headers,
                         json=_payload(radiologist, patient, branch, xray_scan, scheduledAt="2030-01-02T10:00:00Z"))

    too_big = _complete(client, bearer(radiologist), first.json()["data"]["id"], content=b"0" * (MAX_REPORT_SIZE + 1))
    assert too_big.status_code == 400

    exact = _complete(client, bearer(radiologist), second.json()["data"]["id"], content=b"0" * MAX_REPORT_SIZE)
    assert exact.status_code == 200


def test_update_recomputes_financials_and_checks_conflicts(
    client, receptionist, radiologist, patient, branch, make_scan, xray_scan, film
):
    headers = bearer(receptionist)
    ultrasound = make_scan(name="Ultrasound", actual_cost=40, min_price=90, items=[{"item": "X-Ray Film", "quantity": 1}])
    first = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    second = client.post("/api/appointments", headers=headers,
                         json=_payload(radiologist, patient, branch, xray_scan, scheduledAt="2030-01-02T10:00:00Z"))
    appointment_id = second.json()["data"]["id"]

    response = client.patch(f"/api/appointments/{appointment_id}", headers=headers,
                            json={"scans": [{"scan": ultrasound.id, "quantity": 2}]})
    assert response.status_code == 200
    data = response.json()["data"]
    assert (data["cost"], data["price"], data["profit"]) == (80, 180, 100)

    response = client.patch(f"/api/appointments/{appointment_id}", headers=headers, json={"scheduledAt": SCHEDULED_AT})
    assert response.status_code == 409
    assert response.json()["message"] == "Time slot conflicts with existing appointment"
    assert first.status_code == 201


def test_delete_only_scheduled(client, session, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    first = client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    second = client.post("/api/appointments", headers=headers,
                         json=_payload(radiologist, patient, branch, xray_scan, scheduledAt="2030-01-02T10:00:00Z"))

    first_id = first.json()["data"]["id"]
    assert client.delete(f"/api/appointments/{first_id}", headers=headers).status_code == 200
    assert client.get(f"/api/appointments/{first_id}", headers=headers).status_code == 404

    second_id = second.json()["data"]["id"]
    client.patch(f"/api/appointments/{second_id}/status", headers=headers, json={"status": "confirmed"})
    response = client.delete(f"/api/appointments/{second_id}", headers=headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Can only delete scheduled appointments"

    deleted = session.exec(
        select(AuditLog).where(AuditLog.entity_id == first_id, AuditLog.action == AuditAction.DELETE)
    ).first()
    assert deleted.changes["deleted"]["id"] == first_id


def test_history_is_newest_first(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    appointment_id = client.post(
        "/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan)
    ).json()["data"]["id"]
    client.patch(f"/api/appointments/{appointment_id}", headers=headers, json={"notes": "Bring previous films"})

    response = client.get(f"/api/appointments/{appointment_id}/history", headers=headers)
    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()["data"]] == ["UPDATE", "CREATE"]
    assert response.json()["data"][0]["changes"]["after"]["notes"] == "Bring previous films"


def test_list_filters_and_search(client, receptionist, radiologist, patient, branch, xray_scan, film):
    headers = bearer(receptionist)
    client.post("/api/appointments", headers=headers, json=_payload(radiologist, patient, branch, xray_scan))
    client.post("/api/appointments", headers=headers,
                json=_payload(radiologist, patient, branch, xray_scan, scheduledAt="2030-01-02T10:00:00Z",
                              priority="urgent"))

    response = client.get("/api/appointments", headers=headers, params={"priority": "urgent"})
    assert response.json()["pagination"]["total"] == 1

    response = client.get("/api/appointments", headers=headers, params={"search": "jane"})
    assert response.json()["pagination"]["total"] == 2

    response = client.get("/api/appointments", headers=headers,
                          params={"startDate": "2030-01-02T00:00:00Z", "sortBy": "scheduledAt", "sortOrder": "asc"})
    assert [a["priority"] for a in response.json()["data"]] == ["urgent"]

    response = client.get("/api/appointments", headers=headers, params={"sortBy": "password"})
    assert response.status_code == 400
