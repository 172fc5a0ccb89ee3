"""Rendition descriptors, curated formats and the selection between them.

yt-dlp reports every stream YouTube offers for a video, often dozens of
them. The user only gets to pick from a handful: one audio-only entry, a
few video-only resolutions and a single combined stream.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

AUDIO_ONLY = "Audio Only"

RESOLUTION_PATTERN = re.compile(r"^\s*(\d+)")


@dataclass
class RenditionDescriptor:
    itag: str
    ext: str
    has_video: bool
    has_audio: bool
    height: Optional[int] = None
    audio_bitrate: Optional[float] = None
    url: Optional[str] = None
    filesize: Optional[int] = None
    http_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def resolution(self) -> Optional[str]:
        return f"{self.height}p" if self.height else None


@dataclass
class CuratedFormat:
    quality: str
    format: str
    has_video: bool
    has_audio: bool
    itag: str
    file_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'quality': self.quality,
            'format': self.format,
            'hasVideo': self.has_video,
            'hasAudio': self.has_audio,
            'itag': self.itag,
            'fileSize': self.file_size,
        }


@dataclass(frozen=True)
class SelectionConfig:
    """Which tiers make it into the curated list"""
    video_only_resolutions: Tuple[str, ...] = ("1080p", "720p", "480p")
    combined_resolution: str = "360p"
    audio_label: str = AUDIO_ONLY


DEFAULT_SELECTION = SelectionConfig()


def parse_resolution(label: Optional[str]) -> int:
    """Leading number of a quality label, 0 when there is none"""
    if not label:
        return 0
    match = RESOLUTION_PATTERN.match(label)
    return int(match.group(1)) if match else 0


def descriptor_from_ytdlp(fmt: Dict[str, Any]) -> RenditionDescriptor:
    """Convert a yt-dlp format dict into a descriptor"""
    height = fmt.get('height')
    return RenditionDescriptor(
        itag=str(fmt.get('format_id', '')),
        ext=fmt.get('ext') or '',
        has_video=fmt.get('vcodec', 'none') != 'none',
        has_audio=fmt.get('acodec', 'none') != 'none',
        height=int(height) if height else None,
        audio_bitrate=fmt.get('abr'),
        url=fmt.get('url'),
        filesize=fmt.get('filesize') or fmt.get('filesize_approx'),
        http_headers=dict(fmt.get('http_headers') or {}),
    )


def _curate(descriptor: RenditionDescriptor, quality: str) -> CuratedFormat:
    return CuratedFormat(
        quality=quality,
        format=descriptor.ext,
        has_video=descriptor.has_video,
        has_audio=descriptor.has_audio,
        itag=descriptor.itag,
        file_size=descriptor.filesize,
    )


def _is_audio_only(descriptor: RenditionDescriptor) -> bool:
    return descriptor.has_audio and not descriptor.has_video


def select_formats(
    descriptors: Sequence[RenditionDescriptor],
    config: SelectionConfig = DEFAULT_SELECTION,
) -> List[CuratedFormat]:
    """Pick one representative rendition per quality tier.

    The result holds at most one audio-only entry, one entry per
    whitelisted video-only resolution and one combined audio+video entry.
    Video-bearing entries come first, highest resolution first, and the
    audio-only entry last.
    """
    ordered = sorted(descriptors, key=lambda d: d.height or 0, reverse=True)

    selected: List[CuratedFormat] = []
    seen_resolutions = set()
    audio_done = False
    combined_done = False

    for descriptor in ordered:
        resolution = descriptor.resolution

        if _is_audio_only(descriptor):
            if not audio_done:
                selected.append(_curate(descriptor, config.audio_label))
                audio_done = True
            continue

        if (descriptor.has_video and not descriptor.has_audio
                and resolution in config.video_only_resolutions
                and resolution not in seen_resolutions):
            selected.append(_curate(descriptor, resolution))
            seen_resolutions.add(resolution)
            continue

        if (descriptor.has_video and descriptor.has_audio
                and resolution == config.combined_resolution
                and not combined_done):
            selected.append(_curate(descriptor, resolution))
            combined_done = True

    # Second pass over the input order in case the sorted scan found no audio
    if not audio_done:
        fallback = next((d for d in descriptors if _is_audio_only(d)), None)
        if fallback is not None:
            selected.append(_curate(fallback, config.audio_label))

    return sorted(
        selected,
        key=lambda f: (not f.has_video, -parse_resolution(f.quality)),
    )


def sanitize_title(title: Optional[str]) -> str:
    """Filename-safe stem: punctuation stripped, whitespace as underscores"""
    cleaned = re.sub(r"[^\w\s-]", "", title or "", flags=re.ASCII).strip()
    cleaned = re.sub(r"\s+", "_", cleaned)
    return cleaned or "video"


def media_type_for(declared_format: Optional[str]) -> Tuple[str, str]:
    """Map a declared format to (content type, file extension)"""
    if declared_format == AUDIO_ONLY:
        return "audio/mpeg", "mp3"
    ext = re.sub(r"[^a-z0-9]", "", (declared_format or "").lower()) or "mp4"
    if ext == "webm":
        return "video/webm", "webm"
    return "video/mp4", ext


def build_filename(title: Optional[str], declared_format: Optional[str]) -> str:
    _, ext = media_type_for(declared_format)
    return f"{sanitize_title(title)}.{ext}"
