import base64
import os
from io import BytesIO

import pytest
from PIL import Image

from common.crypto import TokenAuth
from common.errors import LibraryError, ServerStateError
from library.registry import LibraryRegistry
from sharing.auth import RateLimiter
from sharing.server import SharingContext, SharingServer, ServerState, create_app, fix_filename_encoding
from sharing.settings import ServerConfig


@pytest.fixture
def ctx(tmp_path, populated_store):
    config_dir = tmp_path / "config"
    registry = LibraryRegistry(str(config_dir), store_factory=lambda path: populated_store)
    return SharingContext(str(config_dir), ServerConfig(), registry, library_path=populated_store.path)


@pytest.fixture
def app_and_socketio(ctx):
    app, socketio = create_app(ctx)
    app.testing = True
    return app, socketio


@pytest.fixture
def client(app_and_socketio):
    return app_and_socketio[0].test_client()


@pytest.fixture
def issue(ctx):
    def issue_user(*permissions, nickname="Remote"):
        user_token = TokenAuth.generate_user_token("hardware")
        user = ctx.users.issue_access(user_token, nickname, list(permissions))
        headers = {"Authorization": f"Bearer {user.access_token}", "X-User-Token": user_token}
        return headers, user
    return issue_user


def error_code(response):
    return response.get_json()["error"]["code"]


def png_data_uri():
    buf = BytesIO()
    Image.new("RGB", (2, 2), (255, 0, 0)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


def test_health_needs_no_token(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_missing_tokens_rejected(client, ctx):
    response = client.get("/api/media")
    assert response.status_code == 401
    assert error_code(response) == "INVALID_TOKEN"
    assert ctx.security_log.entries()[0].action == "auth_failed"
    assert ctx.security_log.entries()[0].success is False


def test_mismatched_token_pair_rejected(client, issue):
    alice, _ = issue("READ_ONLY", nickname="Alice")
    bob, _ = issue("READ_ONLY", nickname="Bob")
    headers = {"Authorization": alice["Authorization"], "X-User-Token": bob["X-User-Token"]}
    response = client.get("/api/media", headers=headers)
    assert response.status_code == 401
    assert error_code(response) == "INVALID_TOKEN"


def test_disabled_user_forbidden(client, ctx, issue):
    headers, user = issue("FULL")
    ctx.users.update_user(user.id, is_active=False)
    response = client.get("/api/media", headers=headers)
    assert response.status_code == 403
    assert error_code(response) == "FORBIDDEN"


def test_ip_allow_list(client, ctx, issue):
    headers, _ = issue("FULL")
    ctx.config.allowed_ips = ["10.0.0.1"]
    response = client.get("/api/media", headers=headers)
    assert response.status_code == 403
    assert error_code(response) == "FORBIDDEN"
    assert client.get("/api/health").status_code == 200


def test_rate_limit(client, ctx):
    ctx.rate_limiter = RateLimiter(2, 60)
    assert client.get("/api/health").status_code == 200
    assert client.get("/api/health").status_code == 200
    response = client.get("/api/health")
    assert response.status_code == 429
    assert error_code(response) == "RATE_LIMIT_EXCEEDED"


def test_rate_limiter_window_resets():
    now = [0.0]
    limiter = RateLimiter(1, 10, clock=lambda: now[0])
    assert limiter.hit("a")
    assert not limiter.hit("a")
    assert limiter.hit("b")
    now[0] = 10.0
    assert limiter.hit("a")


def test_list_media(client, issue):
    headers, _ = issue("READ_ONLY")
    response = client.get("/api/media?page=1&limit=2", headers=headers)
    assert response.status_code == 200
    body = response.get_json()
    assert [m["id"] for m in body["media"]] == [3, 2]
    assert body["total"] == 3
    assert body["totalPages"] == 2

    assert client.get("/api/media?page=abc", headers=headers).status_code == 400


def test_tokens_in_query_string(client, issue):
    headers, user = issue("READ_ONLY")
    user_token = headers["X-User-Token"]
    response = client.get(f"/api/media/1?accessToken={user.access_token}&userToken={user_token}")
    assert response.status_code == 200
    assert response.get_json()["file_name"] == "a.mp4"


def test_unknown_media_is_404(client, issue):
    headers, _ = issue("READ_ONLY")
    response = client.get("/api/media/999", headers=headers)
    assert response.status_code == 404
    assert error_code(response) == "RESOURCE_NOT_FOUND"


def test_read_only_cannot_delete_permanently(client, issue, populated_store):
    headers, _ = issue("READ_ONLY")
    response = client.delete("/api/media/1?permanent=true", headers=headers)
    assert response.status_code == 403
    assert error_code(response) == "INSUFFICIENT_PERMISSION"
    assert populated_store.get(1) is not None


def test_edit_trashes_but_cannot_delete_permanently(client, issue, populated_store):
    headers, _ = issue("EDIT")
    response = client.delete("/api/media/1?permanent=true", headers=headers)
    assert response.status_code == 403
    assert client.delete("/api/media/1", headers=headers).status_code == 200
    assert populated_store.get(1).is_deleted


def test_full_deletes_permanently(client, issue, populated_store):
    headers, _ = issue("FULL")
    response = client.delete("/api/media/2?permanent=true", headers=headers)
    assert response.status_code == 200
    assert populated_store.get(2) is None


def test_update_media_attributes_operator(client, issue, populated_store):
    headers, user = issue("EDIT", nickname="Editor")
    response = client.put("/api/media/1", json={"rating": 4, "description": "great"}, headers=headers)
    assert response.status_code == 200
    assert response.get_json()["rating"] == 4
    assert response.get_json()["description"] == "great"
    entry = next(e for e in populated_store.get_audit_logs() if e.action == "media_update_rating")
    assert entry.user_nickname == "Editor"
    assert entry.user_id == user.id

    response = client.put("/api/media/1", json={"rating": 7}, headers=headers)
    assert response.status_code == 400
    assert error_code(response) == "INVALID_INPUT"


def test_update_media_rejects_parent_cycle(client, issue):
    headers, _ = issue("EDIT")
    assert client.put("/api/media/2", json={"parentId": 1}, headers=headers).status_code == 200
    assert client.put("/api/media/1", json={"parentId": 2}, headers=headers).status_code == 400


def test_rejected_update_changes_nothing(client, issue, populated_store):
    headers, _ = issue("EDIT")
    entries = len(populated_store.audit)
    response = client.put("/api/media/1", json={"rating": 3, "description": "new", "parentId": 1},
                          headers=headers)
    assert response.status_code == 400
    media = populated_store.get(1)
    assert (media.rating, media.description) == (0, None)
    assert len(populated_store.audit) == entries

    taken = os.path.join(os.path.dirname(media.file_path), "taken.mp4")
    open(taken, "w").close()
    response = client.put("/api/media/1", json={"rating": 3, "fileName": "taken.mp4"}, headers=headers)
    assert response.status_code == 400
    assert populated_store.get(1).rating == 0


def test_trashed_media_is_not_found(client, issue, populated_store):
    headers, _ = issue("EDIT", "READ_ONLY")
    populated_store.move_to_trash(1)
    response = client.get("/api/media/1", headers=headers)
    assert response.status_code == 404
    assert error_code(response) == "RESOURCE_NOT_FOUND"
    assert client.put("/api/media/1", json={"rating": 2}, headers=headers).status_code == 404
    assert populated_store.get(1).rating == 0


def test_attach_tags_rejects_non_numeric_ids(client, issue):
    headers, _ = issue("EDIT")
    tag_id = client.post("/api/tags", json={"name": "t"}, headers=headers).get_json()["id"]
    response = client.post("/api/tags/media", json={"mediaIds": ["x"], "tagIds": [tag_id]}, headers=headers)
    assert response.status_code == 400
    assert error_code(response) == "INVALID_INPUT"
    response = client.post("/api/tags/media", json={"mediaIds": 1, "tagIds": [tag_id]}, headers=headers)
    assert response.status_code == 400


def test_tags_and_folders(client, issue):
    headers, _ = issue("EDIT", "READ_ONLY")
    tag = client.post("/api/tags", json={"name": "Holiday"}, headers=headers)
    assert tag.status_code == 201
    tag_id = tag.get_json()["id"]

    attached = client.post("/api/tags/media", json={"mediaIds": [1, 2], "tagIds": [tag_id]}, headers=headers)
    assert attached.get_json()["added"] == 2

    folder = client.post("/api/folders", json={"name": "Trips"}, headers=headers).get_json()
    client.post("/api/folders/media", json={"mediaId": 1, "folderId": folder["id"]}, headers=headers)

    details = client.get("/api/media/1", headers=headers).get_json()
    assert [t["name"] for t in details["tags"]] == ["Holiday"]
    assert [f["name"] for f in details["folders"]] == ["Trips"]

    client.put(f"/api/tags/{tag_id}", json={"name": "Vacation"}, headers=headers)
    details = client.get("/api/media/2", headers=headers).get_json()
    assert [t["name"] for t in details["tags"]] == ["Vacation"]

    removed = client.delete("/api/tags/media", json={"mediaId": 1, "tagId": tag_id}, headers=headers)
    assert removed.get_json()["success"] is True


def test_read_only_cannot_create_tags(client, issue):
    headers, _ = issue("READ_ONLY")
    response = client.post("/api/tags", json={"name": "nope"}, headers=headers)
    assert response.status_code == 403
    assert error_code(response) == "INSUFFICIENT_PERMISSION"


def test_comments(client, issue):
    headers, _ = issue("EDIT", "READ_ONLY", nickname="Commenter")
    response = client.post("/api/media/1/comments", json={"text": "at 5s", "time": 5}, headers=headers)
    assert response.status_code == 201
    assert response.get_json()["nickname"] == "Commenter"

    listed = client.get("/api/media/1/comments", headers=headers).get_json()
    assert [c["text"] for c in listed] == ["at 5s"]

    assert client.post("/api/media/1/comments", json={"text": " "}, headers=headers).status_code == 400
    assert client.delete(f"/api/comments/{listed[0]['id']}", headers=headers).status_code == 200


def test_stream_supports_ranges(client, ctx, issue, populated_store):
    headers, _ = issue("READ_ONLY")
    response = client.get("/api/stream/1", headers=dict(headers, Range="bytes=0-1"))
    assert response.status_code == 206
    assert response.data == b"aa"
    assert response.headers["Content-Range"] == "bytes 0-1/4"
    assert populated_store.get(1).last_played_at is not None
    assert ctx.security_log.entries()[0].action == "play"

    full = client.get("/api/stream/1", headers=headers)
    assert full.status_code == 200
    assert full.data == b"aaaa"
    assert full.headers["Content-Type"] == "video/mp4"


def test_download_requires_download_permission(client, issue):
    reader, _ = issue("READ_ONLY")
    assert client.get("/api/download/1", headers=reader).status_code == 403

    downloader, _ = issue("DOWNLOAD")
    response = client.get("/api/download/1", headers=downloader)
    assert response.status_code == 200
    assert "attachment" in response.headers["Content-Disposition"]
    assert response.data == b"aaaa"


def test_upload_imports_files(client, ctx, issue, populated_store):
    headers, _ = issue("UPLOAD")
    data = {"files": [(BytesIO(b"new"), "new.mp4"), (BytesIO(b"newer"), "new.mp4")]}
    response = client.post("/api/upload", data=data, headers=headers, content_type="multipart/form-data")
    assert response.status_code == 201
    body = response.get_json()
    assert body["importedCount"] == 2
    assert [f["id"] for f in body["files"]] == [4, 5]
    assert len(populated_store.media_files) == 5
    assert os.listdir(ctx.uploads_dir) == []


def test_upload_requires_upload_permission(client, issue):
    headers, _ = issue("EDIT")
    data = {"files": [(BytesIO(b"x"), "x.mp4")]}
    response = client.post("/api/upload", data=data, headers=headers, content_type="multipart/form-data")
    assert response.status_code == 403


def test_upload_without_files_is_invalid(client, issue):
    headers, _ = issue("UPLOAD")
    response = client.post("/api/upload", data={}, headers=headers, content_type="multipart/form-data")
    assert response.status_code == 400


def test_profile_and_avatar(client, ctx, issue):
    headers, user = issue("READ_ONLY", nickname="Old")
    response = client.put("/api/profile", json={"nickname": "New", "iconUrl": png_data_uri()}, headers=headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body["nickname"] == "New"
    assert body["iconUrl"] == f"/api/avatars/{user.id}.png"
    assert ctx.users.get(user.id).nickname == "New"

    avatar = client.get(body["iconUrl"], headers=headers)
    assert avatar.status_code == 200
    assert avatar.data.startswith(b"\x89PNG")

    profile = client.get("/api/profile", headers=headers).get_json()
    assert profile["nickname"] == "New"


def test_profile_rejects_bad_input(client, issue):
    headers, _ = issue("READ_ONLY")
    assert client.put("/api/profile", json={"nickname": "x" * 51}, headers=headers).status_code == 400
    bogus = "data:image/png;base64," + base64.b64encode(b"not an image").decode()
    assert client.put("/api/profile", json={"iconUrl": bogus}, headers=headers).status_code == 400
    assert client.put("/api/profile", json={"iconUrl": "http://x/y.png"}, headers=headers).status_code == 400


def test_audit_logs_require_full(client, issue):
    editor, _ = issue("EDIT")
    client.put("/api/media/1", json={"rating": 2}, headers=editor)
    assert client.get("/api/audit-logs", headers=editor).status_code == 403

    admin, _ = issue("FULL")
    library_log = client.get("/api/audit-logs", headers=admin).get_json()
    assert "media_update_rating" in [e["action"] for e in library_log]
    security_log = client.get("/api/audit-logs?source=security", headers=admin).get_json()
    assert "permission_denied" in [e["action"] for e in security_log]


def test_socket_requires_tokens(app_and_socketio):
    app, socketio = app_and_socketio
    sock = socketio.test_client(app, auth={"accessToken": "nope", "userToken": "nope"})
    assert not sock.is_connected()


def test_socket_receives_library_updates(app_and_socketio, client, ctx, issue):
    app, socketio = app_and_socketio
    headers, user = issue("EDIT")
    sock = socketio.test_client(app, flask_test_client=client, auth={
        "accessToken": user.access_token, "userToken": headers["X-User-Token"],
    })
    assert sock.is_connected()
    assert user.id in [u.id for u in ctx.socket_users.values()]

    sock.emit("watch-media", {"mediaId": 1})
    client.put("/api/media/1", json={"rating": 5}, headers=headers)
    client.post("/api/media/1/comments", json={"text": "live"}, headers=headers)

    received = sock.get_received()
    updates = [r["args"][0] for r in received if r["name"] == "library-updated"]
    assert {"action": "media_update_rating", "targetId": 1} in updates
    comments = [r["args"][0] for r in received if r["name"] == "comment-added"]
    assert [c["text"] for c in comments] == ["live"]

    sock.disconnect()
    assert ctx.socket_users == {}


def test_socket_connection_limit(app_and_socketio, ctx, issue):
    app, socketio = app_and_socketio
    ctx.config.max_connections = 1
    headers, user = issue("READ_ONLY")
    auth = {"accessToken": user.access_token, "userToken": headers["X-User-Token"]}
    first = socketio.test_client(app, auth=auth)
    second = socketio.test_client(app, auth=auth)
    assert first.is_connected()
    assert not second.is_connected()


def test_fix_filename_encoding():
    mangled = "Café.mp4".encode("utf-8").decode("latin-1")
    assert fix_filename_encoding(mangled) == "Café.mp4"
    assert fix_filename_encoding("plain.mp4") == "plain.mp4"
    assert fix_filename_encoding("日本.mp4") == "日本.mp4"


def test_server_lifecycle(tmp_path, populated_store):
    config_dir = tmp_path / "config"
    registry = LibraryRegistry(str(config_dir), store_factory=lambda path: populated_store)
    server = SharingServer(str(config_dir), ServerConfig(host="127.0.0.1", port=0), registry=registry)

    with pytest.raises(LibraryError):
        server.start()

    server.start(populated_store.path)
    try:
        assert server.state == ServerState.RUNNING
        assert server.port > 0
        with pytest.raises(ServerStateError):
            server.start(populated_store.path)
    finally:
        server.stop()
    assert server.state == ServerState.STOPPED
    assert server.port is None
    with pytest.raises(ServerStateError):
        server.stop()
