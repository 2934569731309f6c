"""
Tests for the meetings API endpoints.
"""
import uuid

import pytest
from fastapi import WebSocketDisconnect, status
from fastapi.testclient import TestClient

from app.auth.models import Role
from app.auth.utils import create_access_token
from app.main import create_app
from app.meetings.models import EndReason, MeetingStatus
from app.tenancy.models import SubscriptionPlan

from conftest import create_tenant, create_user


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def client(test_settings, fake_provider):
    """Application with a fake provider, lifespan included."""
    app = create_app(test_settings, room_provider=fake_provider)
    with TestClient(app) as test_client:
        yield test_client


def seed_user(client, name, role=Role.MEMBER, plan=None, unrestricted=False):
    session_factory = client.app.state.session_factory
    tenant = None
    if plan is not None:
        tenant = client.portal.call(create_tenant, session_factory, plan, unrestricted)
    return client.portal.call(create_user, session_factory, name, role, tenant)


def auth(client, user) -> dict:
    token = create_access_token(user.id, user.role.value, client.app.state.settings)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def host(client):
    return seed_user(client, "Alice Host", plan=SubscriptionPlan.FREE, unrestricted=True)


@pytest.fixture
def guest(client):
    return seed_user(client, "Bob Guest", Role.CLIENT)


@pytest.fixture
def meeting(client, host, guest):
    response = client.post(
        "/api/meetings/",
        json={"title": "Kickoff", "duration_minutes": 40, "participants": [str(guest.id)]},
        headers=auth(client, host),
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()["data"]


@pytest.mark.unit
class TestSystem:
    """Test system endpoints."""

    def test_health(self, client):
        response = client.get("/api/system/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"data": {"status": "healthy"}}


@pytest.mark.unit
class TestCreateEndpoint:
    """Test POST /api/meetings/."""

    def test_create_meeting(self, client, meeting, host):
        assert meeting["duration_minutes"] == 40
        assert meeting["meeting_url"] == f"https://app.example.com/meet/{meeting['token']}"
        assert meeting["host_id"] == str(host.id)

    def test_requires_authentication(self, client):
        response = client.post("/api/meetings/", json={"title": "Kickoff"})
        assert response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN)

    def test_invalid_token(self, client):
        response = client.post(
            "/api/meetings/", json={"title": "Kickoff"}, headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"]["code"] == "HTTP_ERROR"

    def test_token_for_another_service(self, client, host):
        settings = client.app.state.settings.model_copy(update={"token_audience": "other-service"})
        token = create_access_token(host.id, host.role.value, settings)

        response = client.post(
            "/api/meetings/", json={"title": "Kickoff"}, headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_clients_cannot_schedule(self, client, guest):
        response = client.post("/api/meetings/", json={"title": "Kickoff"}, headers=auth(client, guest))
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_rejects_non_positive_duration(self, client, host):
        response = client.post(
            "/api/meetings/",
            json={"title": "Kickoff", "duration_minutes": 0},
            headers=auth(client, host),
        )
        assert response.status_code == 422

    def test_upgrade_required(self, client, fake_provider):
        free_host = seed_user(client, "Frank Free", plan=SubscriptionPlan.FREE)
        headers = auth(client, free_host)
        for i in range(2):
            response = client.post("/api/meetings/", json={"title": f"Call {i}"}, headers=headers)
            assert response.status_code == status.HTTP_201_CREATED

        response = client.post("/api/meetings/", json={"title": "Call 3"}, headers=headers)

        assert response.status_code == status.HTTP_402_PAYMENT_REQUIRED
        error = response.json()["error"]
        assert error["code"] == "UPGRADE_REQUIRED"
        assert error["details"] == {"limit": 2, "plan": "free", "current": 2}
        assert len(fake_provider.created) == 2

    def test_provider_failure(self, client, host, fake_provider):
        fake_provider.fail_create = True

        response = client.post("/api/meetings/", json={"title": "Kickoff"}, headers=auth(client, host))

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json()["error"]["code"] == "ROOM_CREATION_FAILED"


@pytest.mark.unit
class TestLinkEndpoints:
    """Test validating and redeeming links."""

    def test_validate_without_auth(self, client, meeting):
        response = client.get(f"/api/meetings/by-token/{meeting['token']}/validate")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()["data"]
        assert data["valid"] is True
        assert data["title"] == "Kickoff"
        assert data["host_name"] == "Alice Host"

    def test_validate_unknown_token(self, client):
        data = client.get("/api/meetings/by-token/missing/validate").json()["data"]
        assert data["valid"] is False
        assert data["reason"] == "not_found"

    def test_join_once(self, client, meeting, guest):
        url = f"/api/meetings/by-token/{meeting['token']}/join"

        first = client.post(url, json={"user_name": "Bob"}, headers=auth(client, guest))
        other = seed_user(client, "Sam Stranger", Role.CLIENT)
        second = client.post(url, headers=auth(client, other))

        assert first.status_code == status.HTTP_200_OK
        joined = first.json()["data"]
        assert joined["success"] is True
        assert joined["join_token"]
        assert joined["duration_minutes"] == 40

        rejected = second.json()["data"]
        assert rejected["success"] is False
        assert rejected["reason"] == "used"
        assert rejected["room_url"] is None

    def test_join_requires_authentication(self, client, meeting):
        response = client.post(f"/api/meetings/by-token/{meeting['token']}/join")
        assert response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN)

    def test_links_for_host(self, client, meeting, host, guest):
        client.post(f"/api/meetings/by-token/{meeting['token']}/join", headers=auth(client, guest))

        response = client.get(f"/api/meetings/{meeting['meeting_id']}/links", headers=auth(client, host))

        links = response.json()["data"]
        assert len(links) == 1
        assert links[0]["used"] is True
        assert links[0]["used_by"] == str(guest.id)

    def test_links_hidden_from_guest(self, client, meeting, guest):
        response = client.get(f"/api/meetings/{meeting['meeting_id']}/links", headers=auth(client, guest))
        assert response.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.unit
class TestMeetingEndpoints:
    """Test reading and moving a single meeting."""

    def test_get_meeting(self, client, meeting, guest):
        response = client.get(f"/api/meetings/{meeting['meeting_id']}", headers=auth(client, guest))

        data = response.json()["data"]
        assert data["status"] == "scheduled"
        assert data["participants"] == [str(guest.id)]
        assert "provider_room_url" not in data

    def test_get_meeting_as_stranger(self, client, meeting):
        stranger = seed_user(client, "Sam Stranger", Role.CLIENT)
        response = client.get(f"/api/meetings/{meeting['meeting_id']}", headers=auth(client, stranger))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_unknown_meeting(self, client, host):
        response = client.get(f"/api/meetings/{uuid.uuid4()}", headers=auth(client, host))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"]["code"] == "MEETING_NOT_FOUND"

    def test_status_after_join(self, client, meeting, guest):
        client.post(f"/api/meetings/by-token/{meeting['token']}/join", headers=auth(client, guest))

        response = client.get(f"/api/meetings/{meeting['meeting_id']}/status", headers=auth(client, guest))

        data = response.json()["data"]
        assert data["status"] == "active"
        assert data["time_exceeded"] is False
        assert 0 < data["time_remaining"] <= 40 * 60

    def test_start_and_end(self, client, meeting, host):
        meeting_url = f"/api/meetings/{meeting['meeting_id']}"
        headers = auth(client, host)

        started = client.post(f"{meeting_url}/start", headers=headers)
        ended = client.post(f"{meeting_url}/end", json={"reason": "manual"}, headers=headers)
        again = client.post(f"{meeting_url}/end", json={"reason": "manual"}, headers=headers)

        assert started.json()["data"]["status"] == "active"
        assert ended.json()["data"]["status"] == "ended"
        assert ended.json()["data"]["end_reason"] == "manual"
        assert again.json()["data"]["already_ended"] is True

    def test_end_with_bad_reason(self, client, meeting, host):
        response = client.post(
            f"/api/meetings/{meeting['meeting_id']}/end",
            json={"reason": "bored"},
            headers=auth(client, host),
        )
        assert response.status_code == 422

    def test_end_scheduled_meeting(self, client, meeting, host):
        response = client.post(
            f"/api/meetings/{meeting['meeting_id']}/end", json={}, headers=auth(client, host)
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_cancel(self, client, meeting, host, fake_provider):
        response = client.post(
            f"/api/meetings/{meeting['meeting_id']}/cancel",
            json={"reason": "Double booked"},
            headers=auth(client, host),
        )

        assert response.json()["data"] == {"success": True, "error": None}
        assert fake_provider.deleted == [fake_provider.created[0]["name"]]

    def test_activity_trail(self, client, meeting, host, guest):
        client.post(f"/api/meetings/by-token/{meeting['token']}/join", headers=auth(client, guest))

        response = client.get(
            f"/api/meetings/{meeting['meeting_id']}/activity", headers=auth(client, host)
        )

        body = response.json()
        assert body["meta"]["total_count"] == 2
        assert {entry["action"] for entry in body["data"]} == {"created", "joined"}


@pytest.mark.unit
class TestListEndpoints:
    """Test listing and usage."""

    def test_list_meetings(self, client, meeting, guest):
        response = client.get("/api/meetings/", headers=auth(client, guest))

        body = response.json()
        assert body["meta"]["total_count"] == 1
        assert body["data"][0]["id"] == meeting["meeting_id"]

    def test_paging(self, client, host):
        headers = auth(client, host)
        for i in range(3):
            client.post("/api/meetings/", json={"title": f"Call {i}"}, headers=headers)

        body = client.get("/api/meetings/?page=1&page_size=2", headers=headers).json()

        assert len(body["data"]) == 2
        assert body["meta"] == {
            "page": 1,
            "page_size": 2,
            "total_count": 3,
            "total_pages": 2,
            "has_more": True,
        }

    def test_filter_by_status(self, client, meeting, guest):
        response = client.get("/api/meetings/?status=active", headers=auth(client, guest))
        assert response.json()["meta"]["total_count"] == 0

    def test_usage(self, client, meeting, host):
        data = client.get("/api/meetings/usage", headers=auth(client, host)).json()["data"]

        assert data["unrestricted"] is True
        assert data["meetings_this_month"] == 1
        assert data["meetings_remaining"] is None


@pytest.mark.unit
class TestStatusWebSocket:
    """Test realtime status pushes."""

    def test_pushes_status_changes(self, client, meeting, host):
        token = create_access_token(host.id, host.role.value, client.app.state.settings)
        meeting_url = f"/api/meetings/{meeting['meeting_id']}"

        with client.websocket_connect(f"{meeting_url}/status/ws?token={token}") as ws:
            assert ws.receive_json() == {"type": "status", "status": "scheduled", "end_reason": None}

            client.post(f"{meeting_url}/start", headers=auth(client, host))
            assert ws.receive_json()["status"] == "active"

            client.post(f"{meeting_url}/end", json={"reason": "manual"}, headers=auth(client, host))
            assert ws.receive_json() == {"type": "status", "status": "ended", "end_reason": "manual"}

    def test_change_during_connect_is_delivered(self, client, meeting, host, monkeypatch):
        meeting_url = f"/api/meetings/{meeting['meeting_id']}"
        client.post(f"{meeting_url}/start", headers=auth(client, host))
        adapter = client.app.state.meeting_adapter
        read_meeting = adapter.get_meeting_for_user

        async def ended_while_connecting(db, meeting_id, user):
            snapshot = await read_meeting(db, meeting_id, user)
            await adapter._publish_status(
                meeting_id, MeetingStatus.ACTIVE, MeetingStatus.ENDED, EndReason.MANUAL
            )
            return snapshot

        monkeypatch.setattr(adapter, "get_meeting_for_user", ended_while_connecting)
        token = create_access_token(host.id, host.role.value, client.app.state.settings)

        with client.websocket_connect(f"{meeting_url}/status/ws?token={token}") as ws:
            assert ws.receive_json()["status"] == "active"
            assert ws.receive_json() == {"type": "status", "status": "ended", "end_reason": "manual"}

    def test_unsubscribes_on_disconnect(self, client, meeting, host):
        adapter = client.app.state.meeting_adapter
        token = create_access_token(host.id, host.role.value, client.app.state.settings)

        with client.websocket_connect(f"/api/meetings/{meeting['meeting_id']}/status/ws?token={token}") as ws:
            ws.receive_json()
            assert adapter.feed.subscriber_count("meetings", meeting["meeting_id"], "UPDATE") == 1

        assert adapter.feed.subscriber_count("meetings", meeting["meeting_id"], "UPDATE") == 0

    def test_rejects_bad_token(self, client, meeting):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/meetings/{meeting['meeting_id']}/status/ws?token=bad"):
                pass
        assert exc_info.value.code == 4001

    def test_rejects_stranger(self, client, meeting):
        stranger = seed_user(client, "Sam Stranger", Role.CLIENT)
        token = create_access_token(stranger.id, stranger.role.value, client.app.state.settings)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/meetings/{meeting['meeting_id']}/status/ws?token={token}"):
                pass
        assert exc_info.value.code == 4003
