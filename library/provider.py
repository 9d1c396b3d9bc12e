"""
Media metadata and thumbnail providers.

The import pipeline treats the provider as an opaque collaborator; this
module defines its interface and the ffmpeg/mutagen backed implementation
used by the desktop and the sharing server.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Any
import logging

import ffmpeg
from mutagen import File as MutagenFile
from mutagen.id3 import ID3, ID3NoHeaderError
from mutagen.flac import FLAC
from mutagen.mp4 import MP4
from PIL import Image

from common.constants import SUPPORTED_AUDIO_FORMATS

logger = logging.getLogger(__name__)


class MediaProvider(ABC):
    """Extracts metadata, thumbnails and colours from media files."""

    @abstractmethod
    def extract_metadata(self, file_path: str) -> Dict[str, Any]:
        """
        Read technical and descriptive metadata.

        Returns:
            Dictionary with any of: width, height, duration, artist,
            description, url. Missing values are None.
        """
        pass

    @abstractmethod
    def generate_thumbnail(self, file_path: str, output_path: str) -> Optional[str]:
        """
        Render a thumbnail image for the file.

        Returns:
            Path of the written image, or None if the file has no picture
        """
        pass

    @abstractmethod
    def dominant_color(self, image_path: str) -> Optional[str]:
        """Return the average colour of an image as ``#rrggbb``."""
        pass


class FFmpegMediaProvider(MediaProvider):
    """Provider backed by ffprobe/ffmpeg, mutagen and Pillow."""

    def __init__(self, thumbnail_width: int = 320, seek_seconds: float = 1.0):
        self.thumbnail_width = thumbnail_width
        self.seek_seconds = seek_seconds

    @staticmethod
    def _is_audio(file_path: str) -> bool:
        return Path(file_path).suffix.lower() in SUPPORTED_AUDIO_FORMATS

    def extract_metadata(self, file_path: str) -> Dict[str, Any]:
        metadata = {
            'width': None,
            'height': None,
            'duration': None,
            'artist': None,
            'description': None,
            'url': None,
        }

        try:
            probe = ffmpeg.probe(file_path)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
            raise ValueError(f"ffprobe failed for {file_path}: {stderr.strip()}") from e

        fmt = probe.get('format', {})
        try:
            metadata['duration'] = float(fmt['duration']) if fmt.get('duration') else None
        except ValueError:
            pass

        video = next((s for s in probe.get('streams', []) if s.get('codec_type') == 'video'
                      and not s.get('disposition', {}).get('attached_pic')), None)
        if video:
            metadata['width'] = int(video.get('width') or 0) or None
            metadata['height'] = int(video.get('height') or 0) or None
            if metadata['duration'] is None and video.get('duration'):
                metadata['duration'] = float(video['duration'])

        tags = {k.lower(): v for k, v in (fmt.get('tags') or {}).items()}
        metadata['artist'] = tags.get('artist') or tags.get('album_artist') or None
        metadata['description'] = tags.get('description') or tags.get('comment') or None
        metadata['url'] = tags.get('purl') or tags.get('url') or None

        if self._is_audio(file_path) and not metadata['artist']:
            metadata['artist'] = self._mutagen_artist(file_path)

        return metadata

    @staticmethod
    def _mutagen_artist(file_path: str) -> Optional[str]:
        try:
            audio = MutagenFile(file_path, easy=True)
        except Exception as e:
            logger.debug(f"mutagen could not read {file_path}: {e}")
            return None
        if audio is None or not audio.tags:
            return None
        values = audio.tags.get('artist')
        return values[0] if values else None

    def generate_thumbnail(self, file_path: str, output_path: str) -> Optional[str]:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)

        if self._is_audio(file_path):
            cover = self._extract_cover_art(file_path)
            if not cover:
                return None
            with open(output_path, 'wb') as f:
                f.write(cover)
            return output_path

        try:
            stream = ffmpeg.input(file_path, ss=self.seek_seconds)
            stream = ffmpeg.filter(stream, 'scale', self.thumbnail_width, -1)
            stream = ffmpeg.output(stream, output_path, vframes=1)
            ffmpeg.run(stream, overwrite_output=True, quiet=True)
        except ffmpeg.Error:
            # Clips shorter than the seek offset: take the first frame
            stream = ffmpeg.input(file_path)
            stream = ffmpeg.filter(stream, 'scale', self.thumbnail_width, -1)
            stream = ffmpeg.output(stream, output_path, vframes=1)
            ffmpeg.run(stream, overwrite_output=True, quiet=True)

        return output_path if Path(output_path).exists() else None

    @staticmethod
    def _extract_cover_art(file_path: str) -> Optional[bytes]:
        ext = Path(file_path).suffix.lower()
        try:
            if ext == '.mp3':
                try:
                    audio = ID3(file_path)
                except ID3NoHeaderError:
                    return None
                for key in audio.keys():
                    if key.startswith('APIC:'):
                        return audio[key].data
            elif ext == '.flac':
                audio = FLAC(file_path)
                if audio.pictures:
                    return audio.pictures[0].data
            elif ext == '.m4a':
                audio = MP4(file_path)
                if audio.tags and 'covr' in audio.tags:
                    return bytes(audio.tags['covr'][0])
        except Exception as e:
            logger.warning(f"Error extracting cover art from {file_path}: {e}")
        return None

    def dominant_color(self, image_path: str) -> Optional[str]:
        with Image.open(image_path) as img:
            pixel = img.convert('RGB').resize((1, 1), Image.Resampling.LANCZOS).getpixel((0, 0))
        return '#{:02x}{:02x}{:02x}'.format(*pixel[:3])
