from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import RecordingConnection
from core.db import get_db
from models import ChatParticipant, GroupJoinRequest, GroupMember, Message
from routers.dependencies import get_blob_store, get_current_user, get_presence
from routers.groups.api import router as groups_router


def _make_client(test_db, user, presence, blob_store):
    app = FastAPI()
    app.include_router(groups_router)

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_presence] = lambda: presence
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    return TestClient(app)


def _act_as(client, user):
    client.app.dependency_overrides[get_current_user] = lambda: user


def _create_group(client):
    return client.post("/groups", json={"name": "Readers", "members": [2, 3]}).json()


def test_join_request_lifecycle(test_db, users, presence, blob_store):
    bob_conn = RecordingConnection("bob")
    presence.register(2, bob_conn)
    client = _make_client(test_db, users[0], presence, blob_store)
    group = _create_group(client)
    group_id = group["groupID"]

    _act_as(client, users[3])
    assert client.post(f"/groups/{group_id}/requests").status_code == 200
    assert client.post(f"/groups/{group_id}/requests").status_code == 409
    assert client.get(f"/groups/{group_id}").json()["hasRequested"] is True
    sent = client.get("/groups/requests/sent").json()
    assert [r["groupID"] for r in sent["requests"]] == [group_id]

    # Only admins see and settle requests
    assert client.get(f"/groups/{group_id}/requests").status_code == 403

    _act_as(client, users[0])
    pending = client.get(f"/groups/{group_id}/requests").json()
    assert [r["user"]["userID"] for r in pending["requests"]] == [4]

    accepted = client.post(f"/groups/{group_id}/requests/4/accept")
    assert accepted.status_code == 200
    assert test_db.query(GroupJoinRequest).count() == 0
    assert test_db.query(GroupMember).filter(GroupMember.user_id == 4).one().is_admin is False
    assert test_db.query(ChatParticipant).filter(
        ChatParticipant.chat_id == group["chatID"], ChatParticipant.user_id == 4
    ).count() == 1

    announcement = (
        test_db.query(Message)
        .filter(Message.chat_id == group["chatID"])
        .order_by(Message.message_id.desc())
        .first()
    )
    assert announcement.text == "Dave joined the group"
    assert announcement.sender_id == 4
    assert bob_conn.events("newMessage")[-1]["data"]["message"]["text"] == "Dave joined the group"

    assert client.post(f"/groups/{group_id}/requests/4/accept").status_code == 404


def test_members_cannot_request_to_join(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)
    group_id = _create_group(client)["groupID"]

    _act_as(client, users[1])
    response = client.post(f"/groups/{group_id}/requests")

    assert response.status_code == 409
    assert client.post("/groups/999/requests").status_code == 404


def test_cancel_and_decline(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)
    group_id = _create_group(client)["groupID"]

    _act_as(client, users[3])
    client.post(f"/groups/{group_id}/requests")
    assert client.delete(f"/groups/{group_id}/requests").status_code == 200
    assert client.delete(f"/groups/{group_id}/requests").status_code == 404

    client.post(f"/groups/{group_id}/requests")
    _act_as(client, users[0])
    assert client.post(f"/groups/{group_id}/requests/4/decline").status_code == 200
    assert client.post(f"/groups/{group_id}/requests/4/decline").status_code == 404
    assert test_db.query(GroupMember).filter(GroupMember.user_id == 4).count() == 0


def test_adding_a_requester_clears_their_request(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)
    group_id = _create_group(client)["groupID"]
    _act_as(client, users[3])
    client.post(f"/groups/{group_id}/requests")

    _act_as(client, users[0])
    client.post(f"/groups/{group_id}/members", json={"userIDs": [4]})

    assert test_db.query(GroupJoinRequest).count() == 0
