"""
Library sharing server.

Publishes one library over HTTP (REST under ``/api``) plus a Socket.IO
channel for change notifications. Remote users authenticate with a token
pair on every request (see sharing.auth) and are authorised per route by
permission scope.
"""

from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import Optional, Dict, Any, List
import base64
import binascii
import logging
import os
import re
import shutil
import threading
import uuid

from flask import Flask, request, jsonify, send_file, send_from_directory, g
from flask_cors import CORS
from flask_socketio import SocketIO, ConnectionRefusedError, join_room, leave_room
from PIL import Image, UnidentifiedImageError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.serving import make_server

from common.audit import AuditLog
from common.constants import (
    APP_VERSION,
    AVATARS_DIRNAME,
    UPLOADS_DIRNAME,
    SECURITY_AUDIT_FILENAME,
    SECURITY_AUDIT_LOG_MAX,
    SECURITY_AUDIT_RETENTION_DAYS,
    DEFAULT_PAGE_SIZE,
    MAX_NICKNAME_LENGTH,
    MAX_AVATAR_BYTES,
    STREAM_MIMETYPES,
)
from common.errors import ApiError, ErrorCode, LibraryError, ServerStateError
from common.models import MediaFile, Permission, utc_now_iso
from library.importer import sanitize_filename
from library.registry import LibraryRegistry
from library.store import LibraryStore
from sharing.auth import (
    EXTENSION_KEY,
    RateLimiter,
    authenticate,
    client_ip,
    current_user,
    ensure_permission,
    log_security_event,
    require_permission,
)
from sharing.settings import ServerConfig
from sharing.users import SharedUserStore

logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r"^data:image/(png|jpe?g|gif|webp);base64,(.+)$", re.DOTALL)


class SharingContext:
    """Everything a request handler needs, attached to the Flask app."""

    def __init__(self, config_dir: str, server_config: ServerConfig, registry: LibraryRegistry,
                 library_path: Optional[str] = None, users: Optional[SharedUserStore] = None,
                 security_log: Optional[AuditLog] = None):
        self.config_dir = Path(config_dir).expanduser()
        self.config = server_config
        self.registry = registry
        self.library_path = library_path or server_config.publish_library_path
        self.users = users or SharedUserStore(str(self.config_dir), server_config)
        if security_log is None:
            security_log = AuditLog(
                self.config_dir / SECURITY_AUDIT_FILENAME,
                SECURITY_AUDIT_LOG_MAX,
                retention_days=SECURITY_AUDIT_RETENTION_DAYS,
                enabled=lambda: self.config.enable_audit_log,
            )
            security_log.load()
        self.security_log = security_log
        self.rate_limiter = RateLimiter(server_config.rate_limit_max, server_config.rate_limit_window_sec)
        self.socket_users: Dict[str, Any] = {}

    @property
    def store(self) -> LibraryStore:
        if not self.library_path:
            raise ApiError(ErrorCode.SERVER_ERROR, "No library is published")
        return self.registry.get_store(self.library_path)

    @property
    def avatars_dir(self) -> Path:
        return self.config_dir / AVATARS_DIRNAME

    @property
    def uploads_dir(self) -> Path:
        return self.config_dir / UPLOADS_DIRNAME


def fix_filename_encoding(name: str) -> str:
    """Undo UTF-8 bytes that were decoded as Latin-1 by the client or a proxy."""
    try:
        return name.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return name


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ApiError(ErrorCode.INVALID_INPUT, f"{name} must be an integer")


def _require_int(data: Dict[str, Any], *names: str) -> int:
    for name in names:
        if data.get(name) is not None:
            try:
                return int(data[name])
            except (TypeError, ValueError):
                break
    raise ApiError(ErrorCode.INVALID_INPUT, f"{names[0]} is required")


def _int_list(data: Dict[str, Any], name: str) -> List[int]:
    values = data.get(name)
    if values is None:
        return []
    if not isinstance(values, list):
        raise ApiError(ErrorCode.INVALID_INPUT, f"{name} must be a list of integers")
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError):
        raise ApiError(ErrorCode.INVALID_INPUT, f"{name} must be a list of integers")


def _not_found(what: str = "Media") -> ApiError:
    return ApiError(ErrorCode.RESOURCE_NOT_FOUND, f"{what} not found")


def _active_media(store: LibraryStore, media_id: int) -> MediaFile:
    """Trashed media count as missing for remote clients."""
    media = store.get(media_id)
    if media is None or media.is_deleted:
        raise _not_found()
    return media


def create_app(ctx: SharingContext):
    """
    Build the Flask app and its Socket.IO server for ``ctx``.

    Returns:
        (app, socketio)
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = ctx.config.max_upload_bytes
    app.extensions[EXTENSION_KEY] = ctx

    CORS(app, supports_credentials=True,
         allow_headers=["Content-Type", "Authorization", "X-User-Token", "Range"],
         expose_headers=["Content-Range", "Content-Length", "Accept-Ranges"])
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

    def broadcast(event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        try:
            socketio.emit(event, payload, to=room)
        except Exception as e:
            logger.warning(f"Failed to emit {event}: {e}")

    def on_library_change(action: str, target_id: Any) -> None:
        broadcast("library-updated", {"action": action, "targetId": target_id})

    def library() -> LibraryStore:
        store = ctx.store
        store.add_change_callback(on_library_change)
        return store

    # ------------------------------------------------------------------
    # Middleware and error handling
    # ------------------------------------------------------------------

    @app.before_request
    def guard_request():
        if request.method == "OPTIONS":
            return None
        if not ctx.rate_limiter.hit(client_ip()):
            raise ApiError(ErrorCode.RATE_LIMIT_EXCEEDED, "Too many requests, try again later")
        if request.path.startswith("/api/") and request.path != "/api/health":
            g.user = authenticate()
        return None

    @app.errorhandler(ApiError)
    def handle_api_error(e: ApiError):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(e):
        body = ApiError(ErrorCode.INVALID_INPUT, "Upload exceeds the maximum allowed size").to_dict()
        return jsonify(body), 413

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            code = ErrorCode.RESOURCE_NOT_FOUND if e.code == 404 else ErrorCode.INVALID_INPUT
            return jsonify(ApiError(code, e.description or e.name).to_dict()), e.code
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify(ApiError(ErrorCode.SERVER_ERROR, "Internal server error").to_dict()), 500

    # ------------------------------------------------------------------
    # Health and profile
    # ------------------------------------------------------------------

    @app.route('/api/health')
    def health_check():
        return jsonify({"status": "ok", "version": APP_VERSION, "serverTime": utc_now_iso()})

    @app.route('/api/profile', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def get_profile():
        user = current_user()
        return jsonify({
            "id": user.id,
            "nickname": user.nickname,
            "iconUrl": user.icon_url,
            "permissions": user.permissions,
        })

    @app.route('/api/profile', methods=['PUT'])
    @require_permission(Permission.READ_ONLY)
    def update_profile():
        user = current_user()
        data = _json_body()
        updates = {}

        if "nickname" in data:
            nickname = str(data.get("nickname") or "").strip()
            if not nickname or len(nickname) > MAX_NICKNAME_LENGTH:
                raise ApiError(ErrorCode.INVALID_INPUT,
                               f"Nickname must be 1-{MAX_NICKNAME_LENGTH} characters")
            updates["nickname"] = nickname

        if data.get("iconUrl"):
            updates["icon_url"] = _save_avatar(ctx, user.id, str(data["iconUrl"]))

        if not updates:
            raise ApiError(ErrorCode.INVALID_INPUT, "Nothing to update")

        updated = ctx.users.update_user(user.id, **updates)
        if updated is None:
            raise ApiError(ErrorCode.INVALID_TOKEN, "Unknown user")
        log_security_event("profile_update", {"fields": sorted(updates)}, user=user, success=True,
                           target_id=user.id, target_name=updated.nickname)
        payload = {"userId": updated.id, "nickname": updated.nickname, "iconUrl": updated.icon_url}
        broadcast("profile-updated", payload)
        return jsonify({"id": updated.id, "nickname": updated.nickname, "iconUrl": updated.icon_url,
                        "permissions": updated.permissions})

    @app.route('/api/avatars/<path:filename>', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def get_avatar(filename):
        return send_from_directory(ctx.avatars_dir, filename)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    @app.route('/api/media', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def list_media():
        page = _int_arg("page", 1)
        limit = _int_arg("limit", DEFAULT_PAGE_SIZE)
        if page < 1 or limit < 1:
            raise ApiError(ErrorCode.INVALID_INPUT, "page and limit must be positive")
        result = library().get_media_files(page=page, limit=limit, search=request.args.get("search"))
        return jsonify({
            "media": [m.to_dict() for m in result["media"]],
            "total": result["total"],
            "page": result["page"],
            "limit": result["limit"],
            "totalPages": result["total_pages"],
        })

    @app.route('/api/media/<int:media_id>', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def get_media(media_id):
        store = library()
        _active_media(store, media_id)
        return jsonify(store.get_media_file_with_details(media_id))

    @app.route('/api/media/<int:media_id>', methods=['PUT'])
    @require_permission(Permission.EDIT)
    def update_media(media_id):
        store = library()
        media = _active_media(store, media_id)
        data = _json_body()

        # Everything is checked before the first write so a 400 changes nothing
        rating = None
        if "rating" in data:
            try:
                rating = int(data["rating"])
            except (TypeError, ValueError):
                raise ApiError(ErrorCode.INVALID_INPUT, "rating must be an integer")
            if not 0 <= rating <= 5:
                raise ApiError(ErrorCode.INVALID_INPUT, "rating must be between 0 and 5")
        if "artists" in data and not isinstance(data["artists"], list):
            raise ApiError(ErrorCode.INVALID_INPUT, "artists must be a list")
        parent_id = None
        if "parentId" in data and data["parentId"] is not None:
            try:
                parent_id = int(data["parentId"])
            except (TypeError, ValueError):
                raise ApiError(ErrorCode.INVALID_INPUT, "parentId must be an integer")
            parent = store.get(parent_id)
            if parent_id == media_id or parent is None or parent.parent_id == media_id:
                raise ApiError(ErrorCode.INVALID_INPUT, "Invalid parent")
        new_name = None
        if data.get("fileName"):
            new_name = sanitize_filename(str(data["fileName"]))
            if new_name != media.file_name and media.file_path and os.path.exists(
                    os.path.join(os.path.dirname(media.file_path), new_name)):
                raise ApiError(ErrorCode.INVALID_INPUT, f"A file named {new_name} already exists")

        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if rating is not None:
                store.update_rating(media_id, rating)
            if "artists" in data:
                store.update_artists(media_id, [str(a) for a in data["artists"]])
            elif "artist" in data:
                store.update_artist(media_id, data["artist"])
            if "description" in data:
                store.update_description(media_id, data["description"])
            if "url" in data:
                store.update_url(media_id, data["url"])
            if "parentId" in data:
                store.update_parent_id(media_id, parent_id)
            if new_name:
                try:
                    store.rename_media(media_id, new_name)
                except ValueError as e:
                    raise ApiError(ErrorCode.INVALID_INPUT, str(e))

        return jsonify(store.get_media_file_with_details(media_id))

    @app.route('/api/media/<int:media_id>', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def delete_media(media_id):
        store = library()
        permanent = request.args.get("permanent", "").lower() in ("1", "true", "yes")
        if permanent:
            ensure_permission(Permission.FULL)
        media = store.get(media_id)
        if media is None:
            raise _not_found()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if permanent:
                store.delete_permanently([media_id])
            else:
                store.move_to_trash(media_id)
        return jsonify({"success": True, "permanent": permanent})

    @app.route('/api/media/<int:media_id>/duplicates', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def get_media_duplicates(media_id):
        store = library()
        if store.get(media_id) is None:
            raise _not_found()
        return jsonify([m.to_dict() for m in store.get_duplicates_for_media(media_id)])

    @app.route('/api/media/<int:media_id>/comments', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def list_comments(media_id):
        store = library()
        if store.get(media_id) is None:
            raise _not_found()
        return jsonify([c.to_dict() for c in store.get_comments(media_id)])

    @app.route('/api/media/<int:media_id>/comments', methods=['POST'])
    @require_permission(Permission.EDIT)
    def add_comment(media_id):
        store = library()
        data = _json_body()
        text = str(data.get("text") or "").strip()
        if not text:
            raise ApiError(ErrorCode.INVALID_INPUT, "text is required")
        try:
            time_offset = float(data.get("time") or 0)
        except (TypeError, ValueError):
            raise ApiError(ErrorCode.INVALID_INPUT, "time must be a number")
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            comment = store.add_comment(media_id, text, time_offset, nickname=user.nickname)
        if comment is None:
            raise _not_found()
        broadcast("comment-added", comment.to_dict(), room=f"media:{media_id}")
        return jsonify(comment.to_dict()), 201

    @app.route('/api/comments/<int:comment_id>', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def delete_comment(comment_id):
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if not store.delete_comment(comment_id):
                raise _not_found("Comment")
        return jsonify({"success": True})

    # ------------------------------------------------------------------
    # Tags and tag groups
    # ------------------------------------------------------------------

    @app.route('/api/tags', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def list_tags():
        return jsonify([t.to_dict() for t in library().get_all_tags()])

    @app.route('/api/tags', methods=['POST'])
    @require_permission(Permission.EDIT)
    def create_tag():
        data = _json_body()
        name = str(data.get("name") or "").strip()
        if not name:
            raise ApiError(ErrorCode.INVALID_INPUT, "name is required")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            tag = store.create_tag(name)
            group_id = data.get("groupId")
            if group_id is not None and tag.group_id != group_id:
                store.update_tag_group(tag.id, group_id)
        return jsonify(tag.to_dict()), 201

    @app.route('/api/tags/<int:tag_id>', methods=['PUT'])
    @require_permission(Permission.EDIT)
    def update_tag(tag_id):
        data = _json_body()
        store = library()
        if store.get_tag(tag_id) is None:
            raise _not_found("Tag")
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if data.get("name"):
                store.rename_tag(tag_id, str(data["name"]).strip())
            if "groupId" in data:
                if store.update_tag_group(tag_id, data["groupId"]) is None:
                    raise _not_found("Tag group")
        return jsonify(store.get_tag(tag_id).to_dict())

    @app.route('/api/tags/<int:tag_id>', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def delete_tag(tag_id):
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if not store.delete_tag(tag_id):
                raise _not_found("Tag")
        return jsonify({"success": True})

    @app.route('/api/tags/media', methods=['POST'])
    @require_permission(Permission.EDIT)
    def attach_tags():
        data = _json_body()
        media_ids = _int_list(data, "mediaIds") or [_require_int(data, "mediaId")]
        tag_ids = _int_list(data, "tagIds") or [_require_int(data, "tagId")]
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            added = store.add_tags_to_media(media_ids, tag_ids)
        return jsonify({"success": True, "added": added})

    @app.route('/api/tags/media', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def detach_tag():
        data = _json_body()
        media_id = _require_int(data, "mediaId")
        tag_id = _require_int(data, "tagId")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            removed = store.remove_tag_from_media(media_id, tag_id)
        return jsonify({"success": removed})

    @app.route('/api/tag-groups', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def list_tag_groups():
        return jsonify([grp.to_dict() for grp in library().get_all_tag_groups()])

    @app.route('/api/tag-groups', methods=['POST'])
    @require_permission(Permission.EDIT)
    def create_tag_group():
        name = str(_json_body().get("name") or "").strip()
        if not name:
            raise ApiError(ErrorCode.INVALID_INPUT, "name is required")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            group = store.create_tag_group(name)
        return jsonify(group.to_dict()), 201

    @app.route('/api/tag-groups/<int:group_id>', methods=['PUT'])
    @require_permission(Permission.EDIT)
    def rename_tag_group(group_id):
        name = str(_json_body().get("name") or "").strip()
        if not name:
            raise ApiError(ErrorCode.INVALID_INPUT, "name is required")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            group = store.rename_tag_group(group_id, name)
        if group is None:
            raise _not_found("Tag group")
        return jsonify(group.to_dict())

    @app.route('/api/tag-groups/<int:group_id>', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def delete_tag_group(group_id):
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if not store.delete_tag_group(group_id):
                raise _not_found("Tag group")
        return jsonify({"success": True})

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    @app.route('/api/folders', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def list_folders():
        return jsonify([f.to_dict() for f in library().get_all_folders()])

    @app.route('/api/folders', methods=['POST'])
    @require_permission(Permission.EDIT)
    def create_folder():
        data = _json_body()
        name = str(data.get("name") or "").strip()
        if not name:
            raise ApiError(ErrorCode.INVALID_INPUT, "name is required")
        store = library()
        parent_id = data.get("parentId")
        if parent_id is not None and store.get_folder(parent_id) is None:
            raise _not_found("Parent folder")
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            folder = store.create_folder(name, parent_id)
        return jsonify(folder.to_dict()), 201

    @app.route('/api/folders/<int:folder_id>', methods=['PUT'])
    @require_permission(Permission.EDIT)
    def rename_folder(folder_id):
        name = str(_json_body().get("name") or "").strip()
        if not name:
            raise ApiError(ErrorCode.INVALID_INPUT, "name is required")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            folder = store.rename_folder(folder_id, name)
        if folder is None:
            raise _not_found("Folder")
        return jsonify(folder.to_dict())

    @app.route('/api/folders/<int:folder_id>', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def delete_folder(folder_id):
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            if not store.delete_folder(folder_id):
                raise _not_found("Folder")
        return jsonify({"success": True})

    @app.route('/api/folders/structure', methods=['PUT'])
    @require_permission(Permission.EDIT)
    def update_folder_structure():
        updates = _json_body().get("updates")
        if not isinstance(updates, list):
            raise ApiError(ErrorCode.INVALID_INPUT, "updates must be a list")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            changed = store.update_folder_structure([u for u in updates if isinstance(u, dict)])
        return jsonify({"success": True, "changed": changed})

    @app.route('/api/folders/media', methods=['POST'])
    @require_permission(Permission.EDIT)
    def attach_folder():
        data = _json_body()
        media_id = _require_int(data, "mediaId")
        folder_id = _require_int(data, "folderId")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            added = store.add_folder_to_media(media_id, folder_id)
        return jsonify({"success": added})

    @app.route('/api/folders/media', methods=['DELETE'])
    @require_permission(Permission.EDIT)
    def detach_folder():
        data = _json_body()
        media_id = _require_int(data, "mediaId")
        folder_id = _require_int(data, "folderId")
        store = library()
        user = current_user()
        with store.acting_as(user.nickname, user.id):
            removed = store.remove_folder_from_media(media_id, folder_id)
        return jsonify({"success": removed})

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @app.route('/api/thumbnails/<int:media_id>', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def get_thumbnail(media_id):
        media = library().get(media_id)
        if media is None or not media.thumbnail_path or not os.path.isfile(media.thumbnail_path):
            raise _not_found("Thumbnail")
        return send_file(media.thumbnail_path, conditional=True, max_age=3600)

    @app.route('/api/stream/<int:media_id>', methods=['GET'])
    @require_permission(Permission.READ_ONLY)
    def stream_media(media_id):
        store = library()
        media = store.get(media_id)
        if media is None or media.is_deleted or not os.path.isfile(media.file_path):
            raise _not_found()
        range_header = request.headers.get("Range", "")
        if not range_header or range_header.startswith("bytes=0-"):
            user = current_user()
            with store.acting_as(user.nickname, user.id):
                store.update_last_played(media_id)
            log_security_event("play", user=user, success=True,
                               target_id=media_id, target_name=media.file_name)
        ext = os.path.splitext(media.file_path)[1].lower()
        return send_file(media.file_path, mimetype=STREAM_MIMETYPES.get(ext, "application/octet-stream"),
                         conditional=True)

    @app.route('/api/download/<int:media_id>', methods=['GET'])
    @require_permission(Permission.DOWNLOAD)
    def download_media(media_id):
        media = library().get(media_id)
        if media is None or media.is_deleted or not os.path.isfile(media.file_path):
            raise _not_found()
        log_security_event("download", user=current_user(), success=True,
                           target_id=media_id, target_name=media.file_name)
        return send_file(media.file_path, as_attachment=True, download_name=media.file_name, conditional=True)

    @app.route('/api/upload', methods=['POST'])
    @require_permission(Permission.UPLOAD)
    def upload_media():
        files = [f for f in request.files.getlist("files") if f and f.filename]
        if not files:
            raise ApiError(ErrorCode.INVALID_INPUT, "No files uploaded")

        store = library()
        user = current_user()
        batch_dirs = []
        paths = []
        try:
            for upload in files:
                name = sanitize_filename(os.path.basename(fix_filename_encoding(upload.filename)))
                # One directory per file so identical names in a batch don't collide
                isolation_dir = ctx.uploads_dir / uuid.uuid4().hex
                isolation_dir.mkdir(parents=True)
                batch_dirs.append(isolation_dir)
                dest = isolation_dir / name
                upload.save(str(dest))
                paths.append(str(dest))

            with store.acting_as(user.nickname, user.id):
                imported = store.import_media_files(paths)
        finally:
            for directory in batch_dirs:
                try:
                    shutil.rmtree(directory)
                except OSError as e:
                    logger.warning(f"Failed to remove upload directory {directory}: {e}")

        log_security_event("upload", {"files": [m.file_name for m in imported]}, user=user, success=True)
        return jsonify({
            "message": f"Uploaded {len(imported)} file(s)",
            "importedCount": len(imported),
            "files": [m.to_dict() for m in imported],
        }), 201

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @app.route('/api/audit-logs', methods=['GET'])
    @require_permission(Permission.FULL)
    def list_audit_logs():
        limit = _int_arg("limit", 100)
        if request.args.get("source") == "security":
            entries = ctx.security_log.entries(limit=limit, user_id=request.args.get("userId"))
        else:
            entries = library().get_audit_logs(limit=limit)
        return jsonify([e.to_dict() for e in entries])

    # ------------------------------------------------------------------
    # Socket.IO
    # ------------------------------------------------------------------

    @socketio.on('connect')
    def on_connect(auth=None):
        auth = auth if isinstance(auth, dict) else {}
        if len(ctx.socket_users) >= ctx.config.max_connections:
            raise ConnectionRefusedError("Too many connections")
        try:
            user = authenticate((auth.get("accessToken"), auth.get("userToken")))
        except ApiError as e:
            raise ConnectionRefusedError(e.message)
        ctx.socket_users[request.sid] = user
        join_room(f"user:{user.id}")
        logger.info(f"Socket connected: {user.nickname} ({request.sid})")

    @socketio.on('disconnect')
    def on_disconnect(*args):
        user = ctx.socket_users.pop(request.sid, None)
        if user:
            logger.info(f"Socket disconnected: {user.nickname} ({request.sid})")

    @socketio.on('watch-media')
    def on_watch_media(data):
        media_id = (data or {}).get("mediaId")
        if request.sid in ctx.socket_users and media_id is not None:
            join_room(f"media:{media_id}")

    @socketio.on('unwatch-media')
    def on_unwatch_media(data):
        media_id = (data or {}).get("mediaId")
        if media_id is not None:
            leave_room(f"media:{media_id}")

    return app, socketio


def _save_avatar(ctx: SharingContext, user_id: str, data_uri: str) -> str:
    """Decode a ``data:image/...;base64`` URI into the avatars directory."""
    match = _DATA_URI.match(data_uri)
    if not match:
        raise ApiError(ErrorCode.INVALID_INPUT, "iconUrl must be a base64 image data URI")
    ext = "jpg" if match.group(1) == "jpeg" else match.group(1)
    try:
        raw = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise ApiError(ErrorCode.INVALID_INPUT, "iconUrl is not valid base64")
    if len(raw) > MAX_AVATAR_BYTES:
        raise ApiError(ErrorCode.INVALID_INPUT, "Avatar image is too large")
    try:
        with Image.open(BytesIO(raw)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ApiError(ErrorCode.INVALID_INPUT, "Avatar is not a readable image")

    ctx.avatars_dir.mkdir(parents=True, exist_ok=True)
    for old in ctx.avatars_dir.glob(f"{user_id}.*"):
        old.unlink()
    filename = f"{user_id}.{ext}"
    with open(ctx.avatars_dir / filename, "wb") as f:
        f.write(raw)
    return f"/api/avatars/{filename}"


class ServerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class SharingServer:
    """
    Start/stop wrapper running the app on a background WSGI server thread.

    State moves stopped -> starting -> running -> stopping -> stopped.
    """

    def __init__(self, config_dir: str, server_config: Optional[ServerConfig] = None,
                 registry: Optional[LibraryRegistry] = None):
        self.config_dir = config_dir
        self.server_config = server_config or ServerConfig.load(config_dir)
        self.registry = registry or LibraryRegistry(config_dir)
        self.context: Optional[SharingContext] = None
        self.app = None
        self.socketio = None
        self._state = ServerState.STOPPED
        self._state_lock = threading.Lock()
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServerState.RUNNING

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    def _transition(self, expected: ServerState, new: ServerState) -> None:
        with self._state_lock:
            if self._state != expected:
                raise ServerStateError(f"Cannot go to {new.value} from {self._state.value}")
            self._state = new

    def start(self, library_path: Optional[str] = None, port: Optional[int] = None) -> None:
        """
        Publish a library and start serving.

        Raises:
            ServerStateError: If the server isn't stopped
            LibraryError: If no library path is configured
        """
        library_path = library_path or self.server_config.publish_library_path
        if not library_path:
            raise LibraryError("No library selected for sharing")

        self._transition(ServerState.STOPPED, ServerState.STARTING)
        try:
            self.registry.get_store(library_path)
            self.context = SharingContext(self.config_dir, self.server_config, self.registry, library_path)
            self.app, self.socketio = create_app(self.context)
            self._server = make_server(
                self.server_config.host,
                self.server_config.port if port is None else port,
                self.app,
                threaded=True,
                ssl_context=self.server_config.ssl_context,
            )
            self._thread = threading.Thread(target=self._server.serve_forever, name="SharingServer", daemon=True)
            self._thread.start()
        except Exception:
            self._server = None
            with self._state_lock:
                self._state = ServerState.STOPPED
            raise

        with self._state_lock:
            self._state = ServerState.RUNNING
        scheme = "https" if self.server_config.ssl_context else "http"
        logger.info(f"Sharing {library_path} on {scheme}://{self.server_config.host}:{self.port}")

    def stop(self) -> None:
        self._transition(ServerState.RUNNING, ServerState.STOPPING)
        try:
            self._server.shutdown()
            self._server.server_close()
            if self._thread:
                self._thread.join(timeout=5)
        finally:
            self._server = None
            self._thread = None
            with self._state_lock:
                self._state = ServerState.STOPPED
        logger.info("Sharing server stopped")

    def serve_forever(self, library_path: Optional[str] = None) -> None:
        """Start and block until interrupted."""
        self.start(library_path)
        try:
            while self._thread and self._thread.is_alive():
                self._thread.join(timeout=1)
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            if self.is_running:
                self.stop()
