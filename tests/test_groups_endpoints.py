import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import PNG_DATA_URI, RecordingConnection
from core.db import get_db
from models import Chat, ChatParticipant, Group, GroupMember, Message, MessageSeen
from routers.dependencies import get_blob_store, get_current_user, get_presence
from routers.groups import repository as groups_repository
from routers.groups.api import router as groups_router
from routers.messaging import messages
from routers.messaging import service as messaging_service


def _make_client(test_db, user, presence, blob_store):
    app = FastAPI()
    app.include_router(groups_router)
    app.include_router(messages.router)

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_presence] = lambda: presence
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    return TestClient(app)


def _act_as(client, user):
    client.app.dependency_overrides[get_current_user] = lambda: user


def _announcements(test_db, chat_id):
    return [
        m.text
        for m in test_db.query(Message)
        .filter(Message.chat_id == chat_id, Message.is_announcement.is_(True))
        .order_by(Message.message_id)
        .all()
    ]


@pytest.fixture
def group(test_db, users, presence, blob_store):
    """Alice's group with Bob and Carol."""
    client = _make_client(test_db, users[0], presence, blob_store)
    response = client.post("/groups", json={"name": "Hikers", "members": [2, 3], "description": "weekends"})
    assert response.status_code == 200
    return response.json()


def test_create_group_sets_up_members_admin_chat_and_announcement(test_db, users, presence, blob_store):
    bob_conn = RecordingConnection("bob")
    presence.register(2, bob_conn)
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.post("/groups", json={"name": " Hikers ", "members": [2, 3, 3, 1]})

    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Hikers"
    assert body["membersCount"] == 3
    assert body["admins"] == [1]
    assert body["isAdmin"] is True

    chat = test_db.query(Chat).filter(Chat.chat_id == body["chatID"]).one()
    assert chat.is_group is True
    assert chat.group_id == body["groupID"]
    assert test_db.query(ChatParticipant).filter(ChatParticipant.chat_id == chat.chat_id).count() == 3
    assert _announcements(test_db, chat.chat_id) == ["Alice created the group"]
    assert bob_conn.events("newMessage")[0]["data"]["message"]["isAnnouncement"] is True


def test_create_group_needs_two_other_existing_members(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)

    too_small = client.post("/groups", json={"name": "Duo", "members": [2, 1]})
    assert too_small.status_code == 400

    unknown = client.post("/groups", json={"name": "Ghosts", "members": [2, 99]})
    assert unknown.status_code == 404

    assert test_db.query(Group).count() == 0
    assert test_db.query(Chat).count() == 0


def test_get_group_details_for_non_member(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[3], presence, blob_store)

    body = client.get(f"/groups/{group['groupID']}").json()

    assert body["isMember"] is False
    assert body["isAdmin"] is False
    assert body["hasRequested"] is False
    assert client.get("/groups/999").status_code == 404


def test_update_group_requires_admin_and_announces(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[1], presence, blob_store)
    group_id = group["groupID"]

    assert client.put(f"/groups/{group_id}", json={"name": "Mine"}).status_code == 403

    _act_as(client, users[0])
    assert client.put(f"/groups/{group_id}", json={}).status_code == 400
    updated = client.put(f"/groups/{group_id}", json={"name": "Trail crew", "image": PNG_DATA_URI})

    assert updated.status_code == 200
    assert updated.json()["name"] == "Trail crew"
    assert updated.json()["image"] == "https://media.test/groups/1.png"
    assert _announcements(test_db, group["chatID"])[-1] == "Alice updated the group info"


def test_update_group_upload_failure_changes_nothing(test_db, users, presence, blob_store, group):
    blob_store.fail = True
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.put(f"/groups/{group['groupID']}", json={"name": "Renamed", "banner": PNG_DATA_URI})

    assert response.status_code == 502
    assert test_db.query(Group).one().name == "Hikers"
    assert _announcements(test_db, group["chatID"]) == ["Alice created the group"]


def test_update_group_uploads_before_locking_the_group(test_db, users, presence, blob_store, group, monkeypatch):
    steps = []
    original_upload = messaging_service.upload_message_image
    original_get_group = groups_repository.get_group

    async def recording_upload(*args, **kwargs):
        steps.append("upload")
        return await original_upload(*args, **kwargs)

    def recording_get_group(db, *, group_id, for_update=False):
        if for_update:
            steps.append("lock")
        return original_get_group(db, group_id=group_id, for_update=for_update)

    monkeypatch.setattr(messaging_service, "upload_message_image", recording_upload)
    monkeypatch.setattr(groups_repository, "get_group", recording_get_group)
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.put(
        f"/groups/{group['groupID']}", json={"image": PNG_DATA_URI, "banner": PNG_DATA_URI}
    )

    assert response.status_code == 200
    assert steps == ["upload", "upload", "lock"]
    assert response.json()["banner"] == "https://media.test/groups/2.png"


def test_update_group_rejects_blank_name_before_uploading(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.put(f"/groups/{group['groupID']}", json={"name": "  ", "image": PNG_DATA_URI})

    assert response.status_code == 400
    assert response.json()["detail"] == "Group name is required"
    assert blob_store.uploads == []


def test_add_members_joins_group_and_chat(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[0], presence, blob_store)
    group_id = group["groupID"]

    added = client.post(f"/groups/{group_id}/members", json={"userIDs": [4]})
    assert added.status_code == 200

    assert client.post(f"/groups/{group_id}/members", json={"userIDs": [4]}).status_code == 409
    assert client.post(f"/groups/{group_id}/members", json={"userIDs": [77]}).status_code == 404

    participants = {
        p.user_id for p in test_db.query(ChatParticipant).filter(ChatParticipant.chat_id == group["chatID"])
    }
    assert participants == {1, 2, 3, 4}
    assert _announcements(test_db, group["chatID"])[-1] == "Alice added Dave"

    _act_as(client, users[1])
    assert client.post(f"/groups/{group_id}/members", json={"userIDs": [4]}).status_code == 403


def test_member_listing_is_for_members(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[1], presence, blob_store)

    listed = client.get(f"/groups/{group['groupID']}/members").json()
    assert listed["totalResults"] == 3
    assert [m["user"]["userID"] for m in listed["members"]] == [1, 2, 3]
    assert [m["isAdmin"] for m in listed["members"]] == [True, False, False]

    _act_as(client, users[3])
    assert client.get(f"/groups/{group['groupID']}/members").status_code == 403


def test_remove_member_drops_membership_and_participation(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[0], presence, blob_store)
    group_id = group["groupID"]

    assert client.delete(f"/groups/{group_id}/members/1").status_code == 400
    assert client.delete(f"/groups/{group_id}/members/4").status_code == 404

    response = client.delete(f"/groups/{group_id}/members/3")

    assert response.status_code == 200
    assert test_db.query(GroupMember).filter(GroupMember.user_id == 3).count() == 0
    assert test_db.query(ChatParticipant).filter(ChatParticipant.user_id == 3).count() == 0
    assert _announcements(test_db, group["chatID"])[-1] == "Alice removed Carol"


def test_last_admin_leaving_promotes_earliest_member(test_db, users, presence, blob_store, group):
    bob_conn = RecordingConnection("bob")
    presence.register(2, bob_conn)
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.post(f"/groups/{group['groupID']}/leave")

    assert response.status_code == 200
    assert response.json()["groupDeleted"] is False
    bob = test_db.query(GroupMember).filter(GroupMember.user_id == 2).one()
    assert bob.is_admin is True
    assert _announcements(test_db, group["chatID"])[-2:] == ["Alice left the group", "Bob is now an admin"]
    texts = [f["data"]["message"]["text"] for f in bob_conn.events("newMessage")]
    assert texts[-2:] == ["Alice left the group", "Bob is now an admin"]


def test_non_admin_leaving_keeps_admins(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[2], presence, blob_store)

    client.post(f"/groups/{group['groupID']}/leave")

    assert _announcements(test_db, group["chatID"])[-1] == "Carol left the group"
    assert [m.user_id for m in test_db.query(GroupMember).filter(GroupMember.is_admin.is_(True))] == [1]


def test_last_member_leaving_deletes_group_chat_and_messages(test_db, users, presence, blob_store, group):
    group_id = group["groupID"]
    client = _make_client(test_db, users[1], presence, blob_store)
    client.post(f"/groups/{group_id}/leave")
    _act_as(client, users[2])
    client.post(f"/groups/{group_id}/leave")

    _act_as(client, users[0])
    response = client.post(f"/groups/{group_id}/leave")

    assert response.json()["groupDeleted"] is True
    assert test_db.query(Group).count() == 0
    assert test_db.query(GroupMember).count() == 0
    assert test_db.query(Chat).count() == 0
    assert test_db.query(Message).count() == 0
    assert test_db.query(MessageSeen).count() == 0


def test_promote_and_demote(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[0], presence, blob_store)
    group_id = group["groupID"]

    assert client.post(f"/groups/{group_id}/admins/2").status_code == 200
    assert client.post(f"/groups/{group_id}/admins/2").status_code == 409
    assert client.post(f"/groups/{group_id}/admins/4").status_code == 404
    assert client.delete(f"/groups/{group_id}/admins/3").status_code == 409

    assert client.delete(f"/groups/{group_id}/admins/2").status_code == 200
    assert _announcements(test_db, group["chatID"])[-2:] == [
        "Alice made Bob an admin",
        "Alice removed Bob as admin",
    ]


def test_sole_admin_cannot_be_demoted(test_db, users, presence, blob_store, group):
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.delete(f"/groups/{group['groupID']}/admins/1")

    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot demote the only admin"
    assert test_db.query(GroupMember).filter(GroupMember.user_id == 1).one().is_admin is True
    assert _announcements(test_db, group["chatID"]) == ["Alice created the group"]


def test_delete_group_cascades_without_announcement(test_db, users, presence, blob_store, group):
    bob_conn = RecordingConnection("bob")
    presence.register(2, bob_conn)
    client = _make_client(test_db, users[1], presence, blob_store)
    group_id = group["groupID"]

    assert client.delete(f"/groups/{group_id}").status_code == 403

    _act_as(client, users[0])
    response = client.delete(f"/groups/{group_id}")

    assert response.status_code == 200
    assert test_db.query(Group).count() == 0
    assert test_db.query(Chat).count() == 0
    assert test_db.query(Message).count() == 0
    assert bob_conn.events("newMessage") == []


def test_announcement_failure_rolls_back_membership_change(test_db, users, presence, blob_store, group, monkeypatch):
    client = _make_client(test_db, users[0], presence, blob_store)

    def broken_announcement(db, *, chat, actor_id, text):
        raise RuntimeError("disk full")

    monkeypatch.setattr(messaging_service, "create_announcement", broken_announcement)

    response = client.delete(f"/groups/{group['groupID']}/members/3")

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to remove member"
    assert test_db.query(GroupMember).filter(GroupMember.user_id == 3).count() == 1
    assert test_db.query(ChatParticipant).filter(ChatParticipant.user_id == 3).count() == 1


def test_group_invites_go_through_private_chats(test_db, users, presence, blob_store, group):
    dave_conn = RecordingConnection("dave")
    presence.register(4, dave_conn)
    client = _make_client(test_db, users[0], presence, blob_store)

    response = client.post("/chats/invites", json={"receiverIDs": [4, 2, 99], "groupInvite": group["groupID"]})

    assert response.status_code == 200
    assert response.json() == {"successful": 1, "failed": 2}
    invite = dave_conn.events("newMessage")[0]["data"]["message"]
    assert invite["text"] == "Alice invited you to join Hikers"
    assert invite["groupInvite"]["groupID"] == group["groupID"]
    assert invite["groupInvite"]["membersCount"] == 3

    _act_as(client, users[3])
    assert client.post("/chats/invites", json={"receiverIDs": [2], "groupInvite": group["groupID"]}).status_code == 403
