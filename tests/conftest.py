import pytest

from library.provider import MediaProvider
from library.store import LibraryStore


class FakeProvider(MediaProvider):
    """Provider that never shells out to ffmpeg."""

    def __init__(self, fail_metadata=False, fail_thumbnail=False):
        self.fail_metadata = fail_metadata
        self.fail_thumbnail = fail_thumbnail
        self.thumbnails = []

    def extract_metadata(self, file_path):
        if self.fail_metadata:
            raise ValueError("unreadable media")
        return {"width": 1280, "height": 720, "duration": 12.5, "artist": "Tester",
                "description": None, "url": None}

    def generate_thumbnail(self, file_path, output_path):
        if self.fail_thumbnail:
            raise RuntimeError("ffmpeg exploded")
        with open(output_path, "wb") as f:
            f.write(b"png")
        self.thumbnails.append(output_path)
        return output_path

    def dominant_color(self, image_path):
        return "#112233"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def library_dir(tmp_path):
    path = tmp_path / "Test.library"
    (path / "images").mkdir(parents=True)
    return path


@pytest.fixture
def source_dir(tmp_path):
    path = tmp_path / "incoming"
    path.mkdir()
    return path


@pytest.fixture
def make_source(source_dir):
    """Factory writing a source file into the incoming directory."""
    def make(name, content=b"media-bytes"):
        path = source_dir / name
        path.write_bytes(content)
        return str(path)
    return make


@pytest.fixture
def store(library_dir, provider):
    s = LibraryStore(str(library_dir), provider=provider, move_timeout_sec=5)
    s.load()
    yield s
    s.close()


@pytest.fixture
def populated_store(store, make_source):
    """Store with three imported files: a.mp4, b.mp4 and c.mp3."""
    paths = [
        make_source("a.mp4", b"aaaa"),
        make_source("b.mp4", b"bbbbbb"),
        make_source("c.mp3", b"cccccccc"),
    ]
    imported = store.import_media_files(paths)
    assert [m.id for m in imported] == [1, 2, 3]
    return store
