import json
import os

import pytest

from common.models import Tag
from library.store import LibraryStore


def reload(store):
    fresh = LibraryStore(store.path)
    fresh.load()
    return fresh


def read_doc(store, media):
    with open(os.path.join(store.path, "images", media.unique_id, "metadata.json")) as f:
        return json.load(f)


def test_import_moves_files_into_library(populated_store, source_dir):
    media = populated_store.get(1)
    assert media.file_name == "a.mp4"
    assert media.file_type == "video"
    assert media.file_size == 4
    assert media.file_path == os.path.join(populated_store.path, "images", media.unique_id, "a.mp4")
    assert os.path.isfile(media.file_path)
    assert not (source_dir / "a.mp4").exists()
    assert media.thumbnail_path.endswith("a_thumbnail.png")
    assert media.dominant_color == "#112233"
    assert populated_store.get(3).file_type == "audio"


def test_ids_are_unique_and_sequential(populated_store, make_source):
    more = populated_store.import_media_files([make_source("d.mp4", b"d")])
    assert [m.id for m in more] == [4]
    ids = [m.id for m in populated_store.get_all_media_files(include_deleted=True)]
    assert len(ids) == len(set(ids))
    unique_ids = [m.unique_id for m in populated_store.media_files]
    assert len(unique_ids) == len(set(unique_ids))


def test_allocate_recovers_from_corrupt_counter(populated_store):
    populated_store.next_media_id = 0
    assert populated_store.allocate_media_id() == 4
    populated_store.next_media_id = "bad"
    assert populated_store.allocate_media_id() == 4


def test_generate_random_id_skips_used(monkeypatch):
    values = iter([7, 7, 9])
    monkeypatch.setattr("library.store.random.randint", lambda a, b: next(values))
    assert LibraryStore.generate_random_id([Tag(id=7, name="x")]) == 9


def test_reload_round_trip(populated_store):
    store = populated_store
    tag = store.create_tag("Holiday")
    folder = store.create_folder("Clips")
    store.add_tag_to_media(1, tag.id)
    store.add_folder_to_media(2, folder.id)
    store.add_comment(1, "nice", 3.0, nickname="Ana")
    store.update_rating(1, 4)

    fresh = reload(store)
    assert [m.to_dict() for m in fresh.media_files] == [m.to_dict() for m in store.media_files]
    assert fresh.media_tags == [(1, tag.id)]
    assert fresh.media_folders == [(2, folder.id)]
    assert [c.text for c in fresh.get_comments(1)] == ["nice"]
    assert fresh.next_media_id == 4


def test_tag_rename_propagates_to_embedded_copies(populated_store):
    store = populated_store
    tag = store.create_tag("old")
    store.add_tags_to_media([1, 2], [tag.id])

    store.rename_tag(tag.id, "new")

    for media_id in (1, 2):
        media = store.get(media_id)
        assert [t.name for t in media.tags] == ["new"]
        assert read_doc(store, media)["tags"][0]["name"] == "new"
    assert store.get(1).tags[0] is not store.get_tag(tag.id)


def test_delete_tag_detaches_everywhere(populated_store):
    store = populated_store
    tag = store.create_tag("gone")
    store.add_tags_to_media([1, 3], [tag.id])
    assert store.delete_tag(tag.id)
    assert store.get(1).tags == []
    assert store.media_tags == []
    assert read_doc(store, store.get(3))["tags"] == []


def test_tag_group_delete_ungroups_tags(populated_store):
    store = populated_store
    group = store.create_tag_group("People")
    tag = store.create_tag("Ana")
    store.update_tag_group(tag.id, group.id)
    store.add_tag_to_media(1, tag.id)
    assert store.get(1).tags[0].group_id == group.id

    assert store.delete_tag_group(group.id)
    assert store.get_tag(tag.id).group_id is None
    assert store.get(1).tags[0].group_id is None


def test_update_tag_group_requires_existing_group(populated_store):
    tag = populated_store.create_tag("x")
    assert populated_store.update_tag_group(tag.id, 12345) is None


def test_create_is_idempotent_without_extra_audit(populated_store):
    store = populated_store
    first = store.create_tag("same")
    entries = len(store.audit)
    second = store.create_tag("same")
    assert second is first
    assert len(store.audit) == entries
    assert len([t for t in store.tags if t.name == "same"]) == 1


def test_attach_twice_is_a_noop(populated_store):
    store = populated_store
    tag = store.create_tag("t")
    assert store.add_tag_to_media(1, tag.id)
    assert not store.add_tag_to_media(1, tag.id)
    assert store.media_tags.count((1, tag.id)) == 1


def test_parent_cycle_guard(populated_store):
    store = populated_store
    assert store.update_parent_id(1, 1) is None
    assert store.update_parent_id(2, 1).parent_id == 1
    assert store.update_parent_id(1, 2) is None
    assert store.get(1).parent_id is None
    assert store.update_parent_id(1, 999) is None


def test_details_include_parent_and_children(populated_store):
    store = populated_store
    store.update_parent_id(2, 1)
    store.update_parent_id(3, 1)
    details = store.get_media_file_with_details(1)
    assert [c["id"] for c in details["children"]] == [2, 3]
    assert details["parent"] is None
    child = store.get_media_file_with_details(2)
    assert child["parent"] == {"id": 1, "title": "a", "file_name": "a.mp4",
                               "thumbnail_path": store.get(1).thumbnail_path}


def test_folder_names_are_deduplicated(populated_store):
    store = populated_store
    a = store.create_folder("Clips")
    b = store.create_folder("Clips")
    c = store.create_folder("Clips")
    nested = store.create_folder("Clips", parent_id=a.id)
    assert [a.name, b.name, c.name] == ["Clips", "Clips (1)", "Clips (2)"]
    assert [a.order_index, b.order_index, c.order_index] == [100, 200, 300]
    assert nested.name == "Clips"
    assert nested.order_index == 100


def test_folder_structure_skips_cycles(populated_store):
    store = populated_store
    a = store.create_folder("A")
    b = store.create_folder("B", parent_id=a.id)
    changed = store.update_folder_structure([
        {"id": a.id, "parentId": b.id},
        {"id": b.id, "parentId": b.id},
        {"id": b.id, "orderIndex": 50},
    ])
    assert changed == 1
    assert store.get_folder(a.id).parent_id is None
    assert store.get_folder(b.id).parent_id == a.id
    assert store.get_folder(b.id).order_index == 50


def test_delete_folder_reparents_children(populated_store):
    store = populated_store
    parent = store.create_folder("Parent")
    child = store.create_folder("Child", parent_id=parent.id)
    store.add_folder_to_media(1, parent.id)
    store.add_folder_to_media(2, child.id)

    assert store.delete_folder(parent.id)
    assert store.get_folder(child.id).parent_id is None
    assert store.get(1).folders == []
    assert store.get(2).folders[0].parent_id is None


def test_folder_rename_and_move_reach_embedded_copies(populated_store):
    store = populated_store
    top = store.create_folder("Top")
    other = store.create_folder("Other")
    child = store.create_folder("Child", parent_id=top.id)
    store.add_folder_to_media(1, top.id)
    store.add_folder_to_media(2, child.id)

    store.rename_folder(top.id, "Renamed")
    assert [f.name for f in store.get(1).folders] == ["Renamed"]
    assert read_doc(store, store.get(1))["folders"][0]["name"] == "Renamed"

    assert store.update_folder_structure([{"id": child.id, "parentId": other.id, "orderIndex": 7}]) == 1
    embedded = store.get(2).folders[0]
    assert (embedded.parent_id, embedded.order_index) == (other.id, 7)
    saved = read_doc(store, store.get(2))["folders"][0]
    assert (saved["parent_id"], saved["order_index"]) == (other.id, 7)
    assert reload(store).get(2).folders[0].parent_id == other.id


def test_update_description(populated_store):
    media = populated_store.update_description(1, "Opening shot")
    assert media.description == "Opening shot"
    assert read_doc(populated_store, media)["description"] == "Opening shot"
    entry = populated_store.get_audit_logs(limit=1)[0]
    assert entry.action == "media_update_description"
    assert entry.details == {"description": "Opening shot"}
    assert populated_store.update_description(999, "x") is None


def test_video_metadata_backfill(populated_store):
    store = populated_store
    assert store.get_videos_missing_metadata() == []
    store.update_video_metadata(1, None, None, None)
    store.update_video_metadata(3, None, None, None)
    assert [m.id for m in store.get_videos_missing_metadata()] == [1]

    media = store.update_video_metadata(1, 1920, 1080, 3.5)
    assert (media.width, media.height, media.duration) == (1920, 1080, 3.5)
    assert store.get_videos_missing_metadata() == []


def test_comments_sorted_by_time(populated_store):
    store = populated_store
    late = store.add_comment(1, "late", 30)
    store.add_comment(1, "early", 2)
    assert [c.text for c in store.get_comments(1)] == ["early", "late"]
    assert store.delete_comment(late.id)
    assert [c.text for c in store.get(1).comments] == ["early"]
    assert store.add_comment(999, "nobody", 0) is None


def test_listing_search_and_trash(populated_store):
    store = populated_store
    page = store.get_media_files(page=1, limit=2)
    assert [m.id for m in page["media"]] == [3, 2]
    assert page["total"] == 3
    assert page["total_pages"] == 2

    store.update_artist(2, "Someone Special")
    assert [m.id for m in store.get_media_files(search="special")["media"]] == [2]

    store.move_to_trash(1)
    assert [m.id for m in store.get_trash()] == [1]
    assert 1 not in [m.id for m in store.get_media_files()["media"]]
    store.restore_from_trash(1)
    assert store.get_trash() == []


def test_rating_is_clamped(populated_store):
    assert populated_store.update_rating(1, 9).rating == 5
    assert populated_store.update_rating(1, -2).rating == 0


def test_rename_media_renames_file(populated_store):
    store = populated_store
    media = store.rename_media(1, "clip:final.mp4")
    assert media.file_name == "clip_final.mp4"
    assert os.path.basename(media.file_path) == "clip_final.mp4"
    assert os.path.isfile(media.file_path)
    assert reload(store).get(1).file_name == "clip_final.mp4"


def test_rename_media_refuses_to_overwrite(populated_store):
    media = populated_store.get(1)
    open(os.path.join(os.path.dirname(media.file_path), "taken.mp4"), "w").close()
    with pytest.raises(ValueError):
        populated_store.rename_media(1, "taken.mp4")


def test_delete_permanently(populated_store):
    store = populated_store
    store.update_parent_id(2, 1)
    media_dir = os.path.dirname(store.get(1).file_path)
    assert store.delete_permanently([1, 999]) == [1]
    assert store.get(1) is None
    assert not os.path.exists(media_dir)
    assert store.get(2).parent_id is None
    assert reload(store).get(1) is None


def test_library_duplicates(populated_store, make_source):
    store = populated_store
    store.import_media_files([make_source("other.mp4", b"aaaa")])
    assert store.find_library_duplicates() == []
    groups = store.find_library_duplicates({"name": False, "size": True})
    assert [[m.id for m in g] for g in groups] == [[1, 4]]
    assert [m.id for m in store.get_duplicates_for_media(4)] == [1]


def test_duplicates_group_by_selected_fields_only(populated_store):
    # Every file gets the same duration from the fake provider
    groups = populated_store.find_library_duplicates({"duration": True})
    assert [[m.id for m in g] for g in groups] == [[1, 2, 3]]
    assert populated_store.find_library_duplicates({}) == []
    assert populated_store.find_library_duplicates({"duration": True, "size": True}) == []


def test_audit_attribution_and_change_callbacks(populated_store):
    store = populated_store
    seen = []
    store.add_change_callback(lambda action, target: seen.append((action, target)))

    with store.acting_as("Remote Ana", "user-1"):
        store.update_rating(2, 3)
    store.update_description(2, "hello")

    latest, previous = store.get_audit_logs(limit=2)
    assert latest.action == "media_update_description"
    assert latest.user_nickname == "System"
    assert previous.action == "media_update_rating"
    assert previous.user_nickname == "Remote Ana"
    assert previous.user_id == "user-1"
    assert seen == [("media_update_rating", 2), ("media_update_description", 2)]


def test_failing_change_callback_does_not_break_mutation(populated_store):
    def boom(action, target):
        raise RuntimeError("listener down")

    populated_store.add_change_callback(boom)
    assert populated_store.update_url(1, "https://example.org").url == "https://example.org"


def test_bare_id_relations_are_resolved_on_load(library_dir):
    (library_dir / "tags.json").write_text(json.dumps([{"id": 5, "name": "Five"}]))
    (library_dir / "images" / "abc").mkdir()
    (library_dir / "images" / "abc" / "metadata.json").write_text(json.dumps({
        "id": 10, "uniqueId": "abc", "file_path": "/x/a.mp4", "file_name": "a.mp4",
        "file_type": "video", "tags": [5],
    }))
    store = LibraryStore(str(library_dir))
    store.load()
    assert store.get(10).tags[0].name == "Five"
    assert store.media_tags == [(10, 5)]
    assert store.next_media_id == 11
