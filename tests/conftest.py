import pytest

from api import create_app
from config import Settings
from downloader import Resolver

VIDEO_ID = "dQw4w9WgXcQ"

SAMPLE_INFO = {
    'id': VIDEO_ID,
    'title': 'My: Video? #1',
    'thumbnail': 'https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg',
    'duration': 212,
    'uploader': 'Rick Astley',
    'view_count': 1500000000,
    'formats': [
        {'format_id': 'sb0', 'ext': 'mhtml', 'vcodec': 'none', 'acodec': 'none'},
        {'format_id': '140', 'ext': 'm4a', 'vcodec': 'none', 'acodec': 'mp4a.40.2',
         'abr': 129.5, 'url': 'https://media.example/140', 'filesize': 3433514},
        {'format_id': '251', 'ext': 'webm', 'vcodec': 'none', 'acodec': 'opus',
         'abr': 135.0, 'url': 'https://media.example/251'},
        {'format_id': '18', 'ext': 'mp4', 'vcodec': 'avc1.42001E', 'acodec': 'mp4a.40.2',
         'height': 360, 'url': 'https://media.example/18'},
        {'format_id': '135', 'ext': 'mp4', 'vcodec': 'avc1.4d401f', 'acodec': 'none',
         'height': 480, 'url': 'https://media.example/135'},
        {'format_id': '136', 'ext': 'mp4', 'vcodec': 'avc1.4d401f', 'acodec': 'none',
         'height': 720, 'url': 'https://media.example/136',
         'http_headers': {'User-Agent': 'test-agent'}},
    ],
}


class FakeResolver(Resolver):
    """Resolver that answers from canned extraction results"""

    def __init__(self, settings, results=None, **kwargs):
        super().__init__(settings, **kwargs)
        self.results = list(results) if results is not None else [SAMPLE_INFO]
        self.attempts = []

    def _extract(self, url, opts):
        self.attempts.append(opts)
        result = self.results[min(len(self.attempts), len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def settings():
    return Settings(log_file=None, chunk_size=4)


@pytest.fixture
def resolver(settings):
    return FakeResolver(settings)


@pytest.fixture
def app(settings, resolver):
    app = create_app(settings, resolver=resolver)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
