import re
import sys
import json
import logging
import argparse
import subprocess
import tempfile
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence
from pathlib import Path
from dataclasses import dataclass, field
from enum import Enum, auto

import requests
import yt_dlp
from dotenv import load_dotenv

from config import Settings
from formats import (
    CuratedFormat, RenditionDescriptor, SelectionConfig, DEFAULT_SELECTION,
    descriptor_from_ytdlp, select_formats,
)

logger = logging.getLogger(__name__)

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
VIDEO_URL_PATTERN = re.compile(
    r"(?:[?&]v=|/watch\?v=|youtu\.be/|/shorts/|/embed/)([A-Za-z0-9_-]{11})"
)
WATCH_URL = "https://www.youtube.com/watch?v={}"

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
MOBILE_UA = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Mobile Safari/537.36"
)


class ResolverError(Exception):
    """Extraction or fetch failed upstream"""
    status_code = 500


class VideoNotFoundError(ResolverError):
    status_code = 404


class FormatNotFoundError(ResolverError):
    status_code = 404


class EmptyDownloadError(ResolverError):
    """Upstream answered but delivered zero bytes"""


class DownloadType(Enum):
    VIDEO = auto()
    AUDIO = auto()


def is_valid_video_id(video_id: Optional[str]) -> bool:
    return bool(video_id) and bool(VIDEO_ID_PATTERN.match(video_id))


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """Pull the 11-character video id out of a YouTube URL (or a bare id)"""
    if not url:
        return None
    url = url.strip()
    if is_valid_video_id(url):
        return url
    match = VIDEO_URL_PATTERN.search(url)
    return match.group(1) if match else None


def watch_url(video_id: str) -> str:
    return WATCH_URL.format(video_id)


@dataclass
class VideoInfo:
    video_id: str
    title: str
    thumbnail: str
    duration: int
    author: str
    view_count: int
    formats: List[CuratedFormat] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'videoId': self.video_id,
            'title': self.title,
            'thumbnail': self.thumbnail,
            'duration': self.duration,
            'author': self.author,
            'viewCount': self.view_count,
            'formats': [f.to_dict() for f in self.formats],
        }


@dataclass(frozen=True)
class HeaderProfile:
    """One request configuration in the extraction fallback chain"""
    name: str
    http_headers: Dict[str, str] = field(default_factory=dict)
    player_clients: Sequence[str] = ()


DEFAULT_PROFILES = (
    HeaderProfile(
        name="browser",
        http_headers={
            'User-Agent': BROWSER_UA,
            'Accept-Language': 'en-US,en;q=0.9',
        },
    ),
    HeaderProfile(name="plain"),
    HeaderProfile(
        name="mobile",
        http_headers={'User-Agent': MOBILE_UA},
        player_clients=("mweb", "android"),
    ),
)


class Resolver:
    """Metadata and media-locator resolution through the yt-dlp library"""

    def __init__(self, settings: Settings, profiles: Sequence[HeaderProfile] = DEFAULT_PROFILES):
        if not profiles:
            raise ValueError("At least one header profile is required")
        self.settings = settings
        self.profiles = tuple(profiles)

    def build_options(self, profile: HeaderProfile) -> Dict[str, Any]:
        """yt-dlp options for one attempt"""
        opts: Dict[str, Any] = {
            'quiet': True,
            'no_warnings': True,
            'skip_download': True,
            'noplaylist': True,
        }
        if profile.http_headers:
            opts['http_headers'] = dict(profile.http_headers)
        if profile.player_clients:
            opts['extractor_args'] = {'youtube': {'player_client': list(profile.player_clients)}}
        if self.settings.cookies_file and self.settings.cookies_file.exists():
            opts['cookiefile'] = str(self.settings.cookies_file)
        if self.settings.proxy:
            opts['proxy'] = self.settings.proxy
        return opts

    def _extract(self, url: str, opts: Dict[str, Any]) -> Dict[str, Any]:
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(url, download=False)

    def extract_info(self, video_id: str) -> Dict[str, Any]:
        """Run the extraction, trying each header profile until one succeeds"""
        url = watch_url(video_id)
        last_error: Optional[Exception] = None

        for profile in self.profiles:
            logger.info(f"Extracting {video_id} with '{profile.name}' profile")
            try:
                info = self._extract(url, self.build_options(profile))
            except Exception as e:
                logger.warning(f"Profile '{profile.name}' failed for {video_id}: {e}")
                last_error = e
                continue
            if info:
                return info
            last_error = ResolverError(f"No information returned for {video_id}")

        message = str(last_error)
        if "Video unavailable" in message or "Private video" in message:
            raise VideoNotFoundError(f"Video {video_id} not found: {message}")
        raise ResolverError(f"Failed to resolve video {video_id}: {message}")

    def list_renditions(self, video_id: str, info: Optional[Dict[str, Any]] = None) -> List[RenditionDescriptor]:
        if info is None:
            info = self.extract_info(video_id)
        return [descriptor_from_ytdlp(f) for f in info.get('formats') or []]

    def find_rendition(self, video_id: str, itag: str) -> RenditionDescriptor:
        """Locate one rendition by its identifier"""
        renditions = self.list_renditions(video_id)
        itag = str(itag)
        for rendition in renditions:
            if rendition.itag == itag:
                if not rendition.url:
                    raise ResolverError(f"No download URL available for format {itag}")
                return rendition

        logger.info(f"Available formats for {video_id}: {[r.itag for r in renditions]}")
        raise FormatNotFoundError(f"Format {itag} not found")

    def fetch_video_info(self, video_id: str, selection: SelectionConfig = DEFAULT_SELECTION) -> VideoInfo:
        info = self.extract_info(video_id)
        return VideoInfo(
            video_id=video_id,
            title=info.get('title') or '',
            thumbnail=info.get('thumbnail') or '',
            duration=int(info.get('duration') or 0),
            author=info.get('uploader') or info.get('channel') or '',
            view_count=int(info.get('view_count') or 0),
            formats=select_formats(self.list_renditions(video_id, info), selection),
        )


class MediaStream:
    """Byte stream whose first chunk has already been read and checked"""

    def __init__(self, first_chunk: bytes, rest: Iterable[bytes],
                 close: Callable[[], None], content_length: Optional[int] = None):
        self.first_chunk = first_chunk
        self.rest = rest
        self.content_length = content_length
        self._close = close

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield self.first_chunk
            for chunk in self.rest:
                if chunk:
                    yield chunk
        finally:
            self.close()

    def close(self):
        if self._close is not None:
            close, self._close = self._close, None
            close()


def file_stream(path: Path, chunk_size: int, cleanup: Optional[Callable[[], None]] = None) -> MediaStream:
    """Stream a finished download from disk, running cleanup once it is closed"""
    try:
        handle = open(path, "rb")
    except OSError:
        if cleanup is not None:
            cleanup()
        raise

    def close():
        handle.close()
        if cleanup is not None:
            cleanup()

    try:
        first_chunk = handle.read(chunk_size)
    except OSError:
        close()
        raise
    if not first_chunk:
        close()
        raise EmptyDownloadError("Downloaded file is empty")

    rest = iter(lambda: handle.read(chunk_size), b"")
    return MediaStream(first_chunk, rest, close, path.stat().st_size)


def fetch_media(rendition: RenditionDescriptor, settings: Settings) -> MediaStream:
    """Open the rendition's media-locator and check it actually has bytes"""
    proxies = {'http': settings.proxy, 'https': settings.proxy} if settings.proxy else None
    try:
        response = requests.get(
            rendition.url,
            headers=rendition.http_headers or None,
            stream=True,
            timeout=settings.request_timeout,
            proxies=proxies,
        )
    except requests.exceptions.RequestException as e:
        raise ResolverError(f"Failed to fetch media: {e}") from e

    if not response.ok:
        response.close()
        raise ResolverError(f"Upstream returned HTTP {response.status_code}")

    length = response.headers.get('Content-Length')
    content_length = int(length) if length and length.isdigit() else None
    if content_length == 0:
        response.close()
        raise EmptyDownloadError("Downloaded file is empty")

    chunks = response.iter_content(chunk_size=settings.chunk_size)
    first_chunk = next(chunks, b'')
    if not first_chunk:
        response.close()
        raise EmptyDownloadError("Downloaded file is empty")

    return MediaStream(first_chunk, chunks, response.close, content_length)


@dataclass
class DownloadConfig:
    url: str
    download_type: DownloadType = DownloadType.VIDEO
    output_dir: Path = Path.cwd()
    format: Optional[str] = None
    cookies_file: Optional[Path] = None
    retries: int = 10
    proxy: Optional[str] = None
    yt_dlp_path: str = "yt-dlp"

    @classmethod
    def from_settings(cls, url: str, settings: Settings, **kwargs) -> "DownloadConfig":
        return cls(
            url=url,
            cookies_file=settings.cookies_file,
            proxy=settings.proxy,
            yt_dlp_path=settings.yt_dlp_path,
            **kwargs
        )


class Downloader:
    """Runs the yt-dlp executable for a single YouTube URL"""

    def __init__(self, config: DownloadConfig):
        self.config = config
        self.validate_config()

    def validate_config(self):
        """Validate download configuration"""
        if not self.config.url:
            raise ValueError("URL cannot be empty")

        if extract_video_id(self.config.url) is None:
            raise ValueError(f"Unsupported URL: {self.config.url}")

        if not self.config.output_dir.exists():
            self.config.output_dir.mkdir(parents=True, exist_ok=True)

        if self.config.cookies_file and not self.config.cookies_file.exists():
            raise FileNotFoundError(f"Cookies file not found: {self.config.cookies_file}")

    def build_yt_dlp_command(self, output: Optional[str] = None) -> List[str]:
        """Construct yt-dlp command based on configuration"""
        cmd = [self.config.yt_dlp_path]

        # Basic options
        cmd.extend([
            "--no-playlist",
            "--retries", str(self.config.retries),
        ])

        if output == "-":
            cmd.extend(["--quiet", "--no-progress", "--no-part"])
        else:
            cmd.extend(["--progress", "--newline"])

        cmd.extend(["-o", output or self.get_output_template()])
        cmd.extend(["-f", self.config.format or self.get_default_format()])

        if self.config.download_type == DownloadType.AUDIO:
            cmd.extend(["--extract-audio", "--audio-format", "mp3"])

        if self.config.proxy:
            cmd.extend(["--proxy", self.config.proxy])

        if self.config.cookies_file and self.config.cookies_file.exists():
            cmd.extend(["--cookies", str(self.config.cookies_file)])

        # Add the URL at the end
        cmd.append(self.config.url)

        return cmd

    def get_output_template(self) -> str:
        """Generate output template based on download type"""
        subdir = "Audio" if self.config.download_type == DownloadType.AUDIO else "Video"
        return str(self.config.output_dir / subdir / "%(title)s [%(id)s].%(ext)s")

    def get_default_format(self) -> str:
        """Get default format based on download type"""
        if self.config.download_type == DownloadType.AUDIO:
            return "bestaudio/best"
        return "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"

    def download(self) -> bool:
        """Execute the download process"""
        cmd = self.build_yt_dlp_command()
        logger.info(f"Executing command: {' '.join(cmd)}")

        # stderr must not be an unread pipe: a full pipe blocks the child
        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=stderr,
                    universal_newlines=True
                )
            except OSError as e:
                logger.error(f"Could not start {self.config.yt_dlp_path}: {e}")
                return False

            # Real-time progress output
            for line in process.stdout:
                line = line.strip()
                if line:
                    logger.info(line)

            process.stdout.close()
            process.wait()

            if process.returncode != 0:
                stderr.seek(0)
                error_output = stderr.read().decode("utf-8", errors="replace").strip()
                logger.error(f"Download failed with error: {error_output}")
                return False

            return True

    def find_output(self) -> Optional[Path]:
        """First file the download left in the output directory"""
        files = sorted(f for f in self.config.output_dir.rglob('*') if f.is_file())
        return files[0] if files else None

    def stream(self, chunk_size: int = 64 * 1024) -> MediaStream:
        """Run yt-dlp writing to stdout and hand back its output as a stream"""
        cmd = self.build_yt_dlp_command(output="-")
        logger.info(f"Streaming command: {' '.join(cmd)}")

        stderr = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr)
        except OSError as e:
            stderr.close()
            raise ResolverError(f"Could not start {self.config.yt_dlp_path}: {e}") from e

        def read_stderr() -> str:
            stderr.seek(0)
            return stderr.read().decode('utf-8', errors='replace').strip()

        first_chunk = process.stdout.read(chunk_size)
        if not first_chunk:
            returncode = process.wait()
            message = read_stderr()
            process.stdout.close()
            stderr.close()
            if returncode != 0:
                raise ResolverError(f"yt-dlp exited with code {returncode}: {message}")
            raise EmptyDownloadError("Downloaded file is empty")

        def close():
            if process.poll() is None:
                process.kill()
            returncode = process.wait()
            if returncode not in (0, -9):
                logger.error(f"yt-dlp exited with code {returncode}: {read_stderr()}")
            process.stdout.close()
            stderr.close()

        rest = iter(lambda: process.stdout.read(chunk_size), b'')
        return MediaStream(first_chunk, rest, close)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="YouTube format lister and downloader",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    input_group = parser.add_argument_group("Input Options")
    input_group.add_argument(
        "urls",
        nargs="+",
        help="YouTube URL(s) or video id(s)"
    )

    dl_group = parser.add_argument_group("Download Options")
    dl_group.add_argument(
        "--list-formats",
        action="store_true",
        help="Print the curated formats instead of downloading"
    )
    dl_group.add_argument(
        "--output-dir",
        type=Path,
        default=Path.cwd() / "downloads",
        help="Directory to save downloads"
    )
    dl_group.add_argument(
        "--format",
        type=str,
        help="yt-dlp format code or selector"
    )
    dl_group.add_argument(
        "--audio",
        action="store_true",
        help="Extract audio as mp3"
    )

    net_group = parser.add_argument_group("Network Options")
    net_group.add_argument(
        "--retries",
        type=int,
        default=10,
        help="Number of retries for failed downloads"
    )

    return parser.parse_args(argv)


def list_formats(video_id: str, settings: Settings) -> VideoInfo:
    info = Resolver(settings).fetch_video_info(video_id)
    print(json.dumps(info.to_dict(), indent=2, ensure_ascii=False))
    return info


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = parse_args(argv)
    settings = Settings.from_env()

    results: Dict[str, bool] = {}
    for url in args.urls:
        video_id = extract_video_id(url)
        if video_id is None:
            logger.error(f"Not a YouTube URL: {url}")
            results[url] = False
            continue

        if args.list_formats:
            try:
                list_formats(video_id, settings)
                results[url] = True
            except ResolverError as e:
                logger.error(str(e))
                results[url] = False
            continue

        config = DownloadConfig.from_settings(
            watch_url(video_id),
            settings,
            download_type=DownloadType.AUDIO if args.audio else DownloadType.VIDEO,
            output_dir=args.output_dir,
            format=args.format,
            retries=args.retries,
        )
        results[url] = Downloader(config).download()

    successful = sum(1 for result in results.values() if result)
    logger.info(f"Total URLs: {len(results)}")
    logger.info(f"Successful: {successful}")
    logger.info(f"Failed: {len(results) - successful}")

    if successful < len(results):
        logger.info("Failed URLs:")
        for url, success in results.items():
            if not success:
                logger.info(f"- {url}")
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("Download interrupted by user")
        sys.exit(1)
