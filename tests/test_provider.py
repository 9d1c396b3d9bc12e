import ffmpeg
import pytest
from PIL import Image

from library.provider import FFmpegMediaProvider

PROBE = {
    "format": {"duration": "42.5", "tags": {"ARTIST": "Band", "comment": "Live take"}},
    "streams": [
        {"codec_type": "video", "width": 600, "height": 600, "disposition": {"attached_pic": 1}},
        {"codec_type": "video", "width": 1920, "height": 1080, "disposition": {"attached_pic": 0}},
        {"codec_type": "audio"},
    ],
}


def test_extract_metadata_from_probe(monkeypatch):
    monkeypatch.setattr(ffmpeg, "probe", lambda path: PROBE)
    metadata = FFmpegMediaProvider().extract_metadata("/x/clip.mp4")
    assert metadata["width"] == 1920
    assert metadata["height"] == 1080
    assert metadata["duration"] == 42.5
    assert metadata["artist"] == "Band"
    assert metadata["description"] == "Live take"
    assert metadata["url"] is None


def test_probe_failure_is_value_error(monkeypatch):
    def fail(path):
        raise ffmpeg.Error("ffprobe", b"", b"Invalid data found")

    monkeypatch.setattr(ffmpeg, "probe", fail)
    with pytest.raises(ValueError, match="Invalid data"):
        FFmpegMediaProvider().extract_metadata("/x/broken.mp4")


def test_dominant_color(tmp_path):
    path = tmp_path / "red.png"
    Image.new("RGB", (4, 4), (255, 0, 0)).save(path)
    assert FFmpegMediaProvider().dominant_color(str(path)) == "#ff0000"


def test_audio_without_cover_has_no_thumbnail(tmp_path):
    song = tmp_path / "song.mp3"
    song.write_bytes(b"\x00" * 64)
    assert FFmpegMediaProvider().generate_thumbnail(str(song), str(tmp_path / "song.png")) is None
