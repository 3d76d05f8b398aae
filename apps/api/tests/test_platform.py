import pytest
from sqlmodel import Session
from starlette.websockets import WebSocketDisconnect

from auth import create_refresh_token
from conftest import bearer
from models import UserType
from services.notification_bus import notification_bus


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["database"] == "ok"
        assert body["uptime"] >= 0
        assert body["timestamp"].endswith("Z")

    def test_degraded_database(self, client, monkeypatch):
        monkeypatch.setattr("main.check_database_health", lambda session: False)
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["database"] == "degraded"


class TestRequestContext:
    def test_request_id_is_generated(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 32
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_inbound_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    def test_error_envelope(self, client):
        response = client.get("/api/branches")
        assert response.status_code == 401
        assert response.json() == {"status": "error", "message": "Authentication required"}


class TestNotificationSocket:
    def test_connect_and_ping(self, client, make_user):
        user = make_user(username="listener")
        token = bearer(user)["Authorization"].split()[1]

        with client.websocket_connect(f"/ws?token={token}") as websocket:
            connected = websocket.receive_json()
            assert connected == {"type": "connected", "data": {"userId": user.id}}
            assert notification_bus.is_user_online(user.id)

            websocket.send_text("ping")
            assert websocket.receive_json()["type"] == "pong"

            websocket.send_text('{"type": "ping"}')
            assert websocket.receive_json()["type"] == "pong"

        assert not notification_bus.is_user_online(user.id)

    def test_lookup_session_is_closed_while_connected(self, client, make_user, monkeypatch):
        closed = []

        class TrackingSession(Session):
            def close(self):
                closed.append(True)
                super().close()

        monkeypatch.setattr("routers.notifications.Session", TrackingSession)
        user = make_user(username="quiet")
        token = bearer(user)["Authorization"].split()[1]

        with client.websocket_connect(f"/ws?token={token}") as websocket:
            assert websocket.receive_json()["type"] == "connected"
            assert closed
            websocket.send_text("ping")
            assert websocket.receive_json()["type"] == "pong"

    def test_rejects_inactive_user(self, client, make_user):
        user = make_user(username="dormant", is_active=False)
        token = bearer(user)["Authorization"].split()[1]

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws?token={token}") as websocket:
                websocket.receive_json()

    def test_rejects_missing_or_wrong_token(self, client, make_user):
        user = make_user(username="intruder")

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws") as websocket:
                websocket.receive_json()

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws?token={create_refresh_token(user.id)}") as websocket:
                websocket.receive_json()


class TestUserManagement:
    def test_list_and_filter(self, client, admin_headers, make_user, radiologist):
        make_user(username="desk")
        response = client.get("/api/users", headers=admin_headers, params={"userType": "radiologist"})
        assert response.status_code == 200
        assert [u["username"] for u in response.json()["data"]] == ["rad1"]

    def test_cannot_modify_super_admin(self, client, make_user):
        other_admin = make_user(UserType.SUPER_ADMIN, username="root2")
        manager = make_user(username="manager", privileges={"users": ["view", "update", "delete"]})

        response = client.patch(f"/api/users/{other_admin.id}", headers=bearer(manager), json={"name": "Renamed"})
        assert response.status_code == 403
        assert response.json()["message"] == "Cannot update super admin user"

        response = client.delete(f"/api/users/{other_admin.id}", headers=bearer(manager))
        assert response.status_code == 403

    def test_cannot_delete_self(self, client, make_user):
        manager = make_user(username="manager", privileges={"users": ["delete"]})
        response = client.delete(f"/api/users/{manager.id}", headers=bearer(manager))
        assert response.status_code == 403
        assert response.json()["message"] == "Cannot delete your own account"

    def test_update_and_delete(self, client, admin_headers, make_user):
        user = make_user(username="temp")
        response = client.patch(f"/api/users/{user.id}", headers=admin_headers, json={"name": "Temporary User"})
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Temporary User"

        assert client.delete(f"/api/users/{user.id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/users/{user.id}", headers=admin_headers).status_code == 404

    def test_deactivated_user_loses_access(self, client, admin_headers, make_user):
        user = make_user(username="soon-gone", privileges={"stock": ["view"]})
        headers = bearer(user)
        assert client.get("/api/stock", headers=headers).status_code == 200

        client.patch(f"/api/users/{user.id}", headers=admin_headers, json={"isActive": False})
        assert client.get("/api/stock", headers=headers).status_code == 401
