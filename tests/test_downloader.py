import io
from pathlib import Path

import pytest
import requests

import downloader
from config import Settings
from downloader import (
    DEFAULT_PROFILES, Downloader, DownloadConfig, DownloadType, EmptyDownloadError,
    FormatNotFoundError, HeaderProfile, ResolverError, VideoNotFoundError,
    extract_video_id, fetch_media, is_valid_video_id,
)
from formats import AUDIO_ONLY, RenditionDescriptor

from .conftest import SAMPLE_INFO, VIDEO_ID, FakeResolver


@pytest.mark.parametrize("url", [
    "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    "https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
    "https://youtu.be/dQw4w9WgXcQ?t=42",
    "https://www.youtube.com/shorts/dQw4w9WgXcQ",
    "https://www.youtube.com/embed/dQw4w9WgXcQ",
    "dQw4w9WgXcQ",
])
def test_extract_video_id(url):
    assert extract_video_id(url) == VIDEO_ID


@pytest.mark.parametrize("url", [None, "", "https://vimeo.com/12345", "https://youtu.be/short"])
def test_extract_video_id_rejects_other_urls(url):
    assert extract_video_id(url) is None


def test_is_valid_video_id():
    assert is_valid_video_id(VIDEO_ID)
    assert not is_valid_video_id("abc")
    assert not is_valid_video_id("dQw4w9WgXc!")


def test_first_successful_profile_wins(settings):
    resolver = FakeResolver(settings, results=[RuntimeError("Sign in to confirm"), SAMPLE_INFO])

    info = resolver.extract_info(VIDEO_ID)

    assert info['title'] == SAMPLE_INFO['title']
    assert len(resolver.attempts) == 2
    assert resolver.attempts[0]['http_headers']['User-Agent'] == downloader.BROWSER_UA
    assert 'http_headers' not in resolver.attempts[1]


def test_all_profiles_failing_raises_last_error(settings):
    resolver = FakeResolver(settings, results=[
        RuntimeError("first"), RuntimeError("second"), RuntimeError("third"),
    ])

    with pytest.raises(ResolverError, match="third"):
        resolver.extract_info(VIDEO_ID)
    assert len(resolver.attempts) == len(DEFAULT_PROFILES)
    assert resolver.attempts[2]['extractor_args'] == {'youtube': {'player_client': ['mweb', 'android']}}


def test_unavailable_video_maps_to_not_found(settings):
    resolver = FakeResolver(settings, results=[RuntimeError("ERROR: Video unavailable")],
                            profiles=[HeaderProfile(name="plain")])

    with pytest.raises(VideoNotFoundError):
        resolver.extract_info(VIDEO_ID)


def test_resolver_requires_profiles(settings):
    with pytest.raises(ValueError):
        FakeResolver(settings, profiles=[])


def test_build_options_include_proxy_and_cookies(tmp_path):
    cookies = tmp_path / "cookies.txt"
    cookies.write_text("# Netscape HTTP Cookie File\n")
    resolver = FakeResolver(Settings(proxy="http://proxy:3128", cookies_file=cookies))

    opts = resolver.build_options(HeaderProfile(name="plain"))

    assert opts['proxy'] == "http://proxy:3128"
    assert opts['cookiefile'] == str(cookies)
    assert opts['skip_download'] is True


def test_find_rendition(resolver):
    rendition = resolver.find_rendition(VIDEO_ID, "136")

    assert rendition.url == "https://media.example/136"
    assert rendition.height == 720


def test_find_rendition_unknown_itag(resolver):
    with pytest.raises(FormatNotFoundError) as excinfo:
        resolver.find_rendition(VIDEO_ID, "999")
    assert excinfo.value.status_code == 404


def test_find_rendition_without_url(resolver):
    with pytest.raises(ResolverError, match="No download URL"):
        resolver.find_rendition(VIDEO_ID, "sb0")


def test_fetch_video_info(resolver):
    info = resolver.fetch_video_info(VIDEO_ID)

    assert info.title == "My: Video? #1"
    assert info.author == "Rick Astley"
    assert info.duration == 212
    assert [f.quality for f in info.formats] == ["720p", "480p", "360p", AUDIO_ONLY]


class FakeResponse:
    def __init__(self, status_code=200, chunks=(b"abc", b"def"), headers=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self.headers = headers or {}
        self.chunks = list(chunks)
        self.closed = False

    def iter_content(self, chunk_size=1):
        return iter(self.chunks)

    def close(self):
        self.closed = True


@pytest.fixture
def rendition():
    return RenditionDescriptor(itag="18", ext="mp4", has_video=True, has_audio=True, height=360,
                               url="https://media.example/18", http_headers={'User-Agent': 'ua'})


def test_fetch_media_streams_all_chunks(monkeypatch, settings, rendition):
    calls = {}
    response = FakeResponse(headers={'Content-Length': '6'})

    def fake_get(url, **kwargs):
        calls.update(kwargs, url=url)
        return response

    monkeypatch.setattr(downloader.requests, "get", fake_get)
    stream = fetch_media(rendition, settings)

    assert stream.content_length == 6
    assert b"".join(stream) == b"abcdef"
    assert response.closed
    assert calls['url'] == rendition.url
    assert calls['headers'] == {'User-Agent': 'ua'}
    assert calls['stream'] is True


def test_fetch_media_upstream_error(monkeypatch, settings, rendition):
    response = FakeResponse(status_code=403)
    monkeypatch.setattr(downloader.requests, "get", lambda url, **kwargs: response)

    with pytest.raises(ResolverError, match="HTTP 403"):
        fetch_media(rendition, settings)
    assert response.closed


@pytest.mark.parametrize("response", [
    FakeResponse(headers={'Content-Length': '0'}),
    FakeResponse(chunks=()),
])
def test_fetch_media_empty_body(monkeypatch, settings, rendition, response):
    monkeypatch.setattr(downloader.requests, "get", lambda url, **kwargs: response)

    with pytest.raises(EmptyDownloadError, match="empty"):
        fetch_media(rendition, settings)


def test_fetch_media_connection_error(monkeypatch, settings, rendition):
    def fail(url, **kwargs):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(downloader.requests, "get", fail)

    with pytest.raises(ResolverError, match="refused"):
        fetch_media(rendition, settings)


def make_config(tmp_path, **kwargs):
    return DownloadConfig(url=f"https://youtu.be/{VIDEO_ID}", output_dir=tmp_path, **kwargs)


def test_downloader_rejects_non_youtube_url(tmp_path):
    with pytest.raises(ValueError):
        Downloader(DownloadConfig(url="https://vimeo.com/1", output_dir=tmp_path))


def test_downloader_missing_cookies_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Downloader(make_config(tmp_path, cookies_file=tmp_path / "missing.txt"))


def test_build_video_command(tmp_path):
    cmd = Downloader(make_config(tmp_path, proxy="socks5://127.0.0.1:1080")).build_yt_dlp_command()

    assert cmd[0] == "yt-dlp"
    assert cmd[-1] == f"https://youtu.be/{VIDEO_ID}"
    assert cmd[cmd.index("-f") + 1] == "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
    assert cmd[cmd.index("-o") + 1] == str(tmp_path / "Video" / "%(title)s [%(id)s].%(ext)s")
    assert cmd[cmd.index("--proxy") + 1] == "socks5://127.0.0.1:1080"
    assert "--extract-audio" not in cmd


def test_build_audio_command(tmp_path):
    cmd = Downloader(make_config(tmp_path, download_type=DownloadType.AUDIO)).build_yt_dlp_command()

    assert cmd[cmd.index("-f") + 1] == "bestaudio/best"
    assert cmd[cmd.index("--audio-format") + 1] == "mp3"
    assert "Audio" in cmd[cmd.index("-o") + 1]


def test_build_stdout_command(tmp_path):
    cmd = Downloader(make_config(tmp_path, format="18")).build_yt_dlp_command(output="-")

    assert cmd[cmd.index("-o") + 1] == "-"
    assert "--quiet" in cmd
    assert cmd[cmd.index("-f") + 1] == "18"


class FakeProcess:
    def __init__(self, cmd, stdout=None, stderr=None, output=b"", returncode=0, errors=b"", **kwargs):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr_target = stderr
        stderr.write(errors)
        if kwargs.get("universal_newlines"):
            self.stdout = io.StringIO(output.decode())
        else:
            self.stdout = io.BytesIO(output)

    def poll(self):
        return self.returncode

    def wait(self):
        return self.returncode


def fake_popen(monkeypatch, **behaviour):
    launched = []

    def popen(cmd, **kwargs):
        process = FakeProcess(cmd, **kwargs, **behaviour)
        launched.append(process)
        return process

    monkeypatch.setattr(downloader.subprocess, "Popen", popen)
    return launched


def test_stream_yields_process_output(monkeypatch, tmp_path):
    launched = fake_popen(monkeypatch, output=b"0123456789")

    stream = Downloader(make_config(tmp_path)).stream(chunk_size=4)

    assert b"".join(stream) == b"0123456789"
    assert launched[0].cmd[launched[0].cmd.index("-o") + 1] == "-"


def test_stream_failed_process(monkeypatch, tmp_path):
    fake_popen(monkeypatch, returncode=1, errors=b"ERROR: Requested format is not available")

    with pytest.raises(ResolverError, match="Requested format is not available"):
        Downloader(make_config(tmp_path)).stream()


def test_stream_no_output(monkeypatch, tmp_path):
    fake_popen(monkeypatch)

    with pytest.raises(EmptyDownloadError):
        Downloader(make_config(tmp_path)).stream()


def test_stream_missing_executable(monkeypatch, tmp_path):
    def popen(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(downloader.subprocess, "Popen", popen)

    with pytest.raises(ResolverError, match="Could not start"):
        Downloader(make_config(tmp_path)).stream()


def test_download_reports_process_failure(monkeypatch, tmp_path, caplog):
    launched = fake_popen(monkeypatch, output=b"[youtube] Extracting URL\n", returncode=1, errors=b"ERROR: boom")

    assert Downloader(make_config(tmp_path)).download() is False
    assert launched[0].stderr_target is not downloader.subprocess.PIPE
    assert "ERROR: boom" in caplog.text


def test_download_missing_executable(monkeypatch, tmp_path):
    def popen(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(downloader.subprocess, "Popen", popen)

    assert Downloader(make_config(tmp_path)).download() is False


def test_download_success_and_find_output(monkeypatch, tmp_path):
    fake_popen(monkeypatch, output=b"[download] 100%\n")
    target = tmp_path / "Video" / "clip [dQw4w9WgXcQ].mp4"
    target.parent.mkdir()
    target.write_bytes(b"data")

    dl = Downloader(make_config(tmp_path))

    assert dl.download() is True
    assert dl.find_output() == target


def test_find_output_empty_dir(tmp_path):
    assert Downloader(make_config(tmp_path)).find_output() is None


def test_cli_lists_formats(monkeypatch, capsys):
    monkeypatch.setattr(downloader, "Resolver", FakeResolver)

    assert downloader.main([f"https://youtu.be/{VIDEO_ID}", "--list-formats"]) == 0
    assert '"quality": "720p"' in capsys.readouterr().out


def test_cli_rejects_bad_url():
    assert downloader.main(["https://example.com/nothing", "--list-formats"]) == 1


def test_file_stream_runs_cleanup(tmp_path):
    target = tmp_path / "song.mp3"
    target.write_bytes(b"0123456789")
    cleaned = []

    stream = downloader.file_stream(target, 4, cleanup=lambda: cleaned.append(True))

    assert stream.content_length == 10
    assert b"".join(stream) == b"0123456789"
    assert cleaned == [True]


def test_file_stream_empty_file(tmp_path):
    target = tmp_path / "empty.mp3"
    target.write_bytes(b"")
    cleaned = []

    with pytest.raises(EmptyDownloadError):
        downloader.file_stream(target, 4, cleanup=lambda: cleaned.append(True))
    assert cleaned == [True]


class FailingHandle:
    def __init__(self):
        self.closed = False

    def read(self, size=-1):
        raise OSError("I/O error")

    def close(self):
        self.closed = True


def test_file_stream_read_error_runs_cleanup(monkeypatch, tmp_path):
    handle = FailingHandle()
    cleaned = []
    monkeypatch.setattr(downloader, "open", lambda path, mode: handle, raising=False)

    with pytest.raises(OSError, match="I/O error"):
        downloader.file_stream(tmp_path / "song.mp3", 4, cleanup=lambda: cleaned.append(True))
    assert handle.closed
    assert cleaned == [True]


def test_file_stream_missing_file_runs_cleanup(tmp_path):
    cleaned = []

    with pytest.raises(FileNotFoundError):
        downloader.file_stream(tmp_path / "missing.mp3", 4, cleanup=lambda: cleaned.append(True))
    assert cleaned == [True]
