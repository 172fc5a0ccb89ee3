import re
import logging
from typing import Any, Dict, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config import Settings
from downloader import ResolverError, VideoNotFoundError

logger = logging.getLogger(__name__)

ISO_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


def parse_iso_duration(value: Optional[str]) -> int:
    """Seconds in an ISO 8601 duration such as PT1H2M3S, 0 if unparseable"""
    match = ISO_DURATION_PATTERN.match(value or "")
    if not match:
        return 0
    parts = {k: int(v) for k, v in match.groupdict(default="0").items()}
    return parts['days'] * 86400 + parts['hours'] * 3600 + parts['minutes'] * 60 + parts['seconds']


def _best_thumbnail(thumbnails: Dict[str, Any]) -> str:
    for key in ('maxres', 'standard', 'high', 'medium', 'default'):
        if key in thumbnails:
            return thumbnails[key].get('url', '')
    return ''


class YouTubeDataClient:
    """Video metadata from the official YouTube Data API v3"""

    def __init__(self, settings: Settings, service=None):
        # Fails before any network call when the key is missing
        self.api_key = settings.require_api_key()
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = build('youtube', 'v3', developerKey=self.api_key, cache_discovery=False)
        return self._service

    def get_video(self, video_id: str) -> Dict[str, Any]:
        logger.info(f"Requesting metadata for {video_id} from the YouTube Data API")
        try:
            response = self.service.videos().list(
                part='snippet,contentDetails,statistics',
                id=video_id,
            ).execute()
        except HttpError as e:
            raise ResolverError(f"YouTube Data API request failed: {e}") from e

        items = response.get('items') or []
        if not items:
            raise VideoNotFoundError(f"Video {video_id} not found")

        item = items[0]
        snippet = item.get('snippet', {})
        return {
            'title': snippet.get('title', ''),
            'thumbnail': _best_thumbnail(snippet.get('thumbnails', {})),
            'duration': parse_iso_duration(item.get('contentDetails', {}).get('duration')),
            'author': snippet.get('channelTitle', ''),
            'view_count': int(item.get('statistics', {}).get('viewCount') or 0),
        }
