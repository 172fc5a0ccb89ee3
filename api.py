from flask import Blueprint, Flask, Response, current_app, jsonify, redirect, request, stream_with_context
from flask_cors import CORS
from dataclasses import dataclass
from typing import Optional
import logging
import tempfile
from pathlib import Path
import shutil

from config import Settings
from downloader import (
    Downloader, DownloadConfig, DownloadType, MediaStream, Resolver, ResolverError, VideoInfo,
    extract_video_id, fetch_media, file_stream, is_valid_video_id, watch_url,
)
from formats import AUDIO_ONLY, DEFAULT_SELECTION, SelectionConfig, build_filename, media_type_for, select_formats
from youtube_api import YouTubeDataClient

logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__)


@dataclass
class Services:
    settings: Settings
    resolver: Resolver
    selection: SelectionConfig = DEFAULT_SELECTION
    metadata_client: Optional[YouTubeDataClient] = None


def create_app(settings: Optional[Settings] = None, resolver: Optional[Resolver] = None,
               metadata_client: Optional[YouTubeDataClient] = None,
               selection: SelectionConfig = DEFAULT_SELECTION) -> Flask:
    """Build the Flask application with its resolver and metadata source"""
    settings = settings or Settings.from_env()
    if settings.metadata_source == "official" and metadata_client is None:
        metadata_client = YouTubeDataClient(settings)

    app = Flask(__name__)
    CORS(app)
    app.extensions['ytfetch'] = Services(
        settings=settings,
        resolver=resolver or Resolver(settings),
        selection=selection,
        metadata_client=metadata_client,
    )
    app.register_blueprint(bp)
    return app


def services() -> Services:
    return current_app.extensions['ytfetch']


def error_response(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


def attachment_headers(filename: str, content_length: Optional[int] = None):
    headers = {'Content-Disposition': f'attachment; filename="{filename}"'}
    if content_length is not None:
        headers['Content-Length'] = str(content_length)
    return headers


def stream_response(stream: MediaStream, content_type: str, filename: str) -> Response:
    response = Response(
        stream_with_context(iter(stream)),
        mimetype=content_type,
        headers=attachment_headers(filename, stream.content_length),
    )
    response.call_on_close(stream.close)
    return response


def remove_dir(path: Path):
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning(f"Could not remove temporary directory {path}: {e}")


@bp.route('/')
def index():
    return jsonify({'success': True, 'message': 'YouTube download API running'})


# Endpoint 1: Fetch video metadata and curated formats
@bp.route('/api/video-info', methods=['GET'])
def video_info():
    video_id = request.args.get('videoId', '').strip()
    if not video_id:
        return error_response('Video ID is required', 400)
    if not is_valid_video_id(video_id):
        return error_response(f'Invalid video ID: {video_id}', 400)

    svc = services()
    try:
        if svc.metadata_client is not None:
            meta = svc.metadata_client.get_video(video_id)
            renditions = svc.resolver.list_renditions(video_id)
            info = VideoInfo(
                video_id=video_id,
                formats=select_formats(renditions, svc.selection),
                **meta
            )
        else:
            info = svc.resolver.fetch_video_info(video_id, svc.selection)

        logger.info(f"Resolved '{info.title}' with {len(info.formats)} formats")
        return jsonify({'success': True, 'data': info.to_dict()})
    except ResolverError as e:
        logger.error(f"Video info failed for {video_id}: {e}")
        return error_response(str(e), e.status_code)
    except Exception as e:
        logger.exception(f"Unexpected error fetching info for {video_id}")
        return error_response(f'Error fetching video info: {e}', 500)


# Endpoint 2: Proxy the chosen rendition back to the client
@bp.route('/api/download', methods=['POST'])
def download_rendition():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return error_response('videoId and itag are required', 400)
    video_id = str(data.get('videoId') or '').strip()
    itag = str(data.get('itag') or '').strip()
    title = data.get('title')
    declared_format = data.get('format')

    if not video_id or not itag:
        return error_response('videoId and itag are required', 400)
    if not is_valid_video_id(video_id):
        return error_response(f'Invalid video ID: {video_id}', 400)

    svc = services()
    try:
        rendition = svc.resolver.find_rendition(video_id, itag)
        declared_format = declared_format or rendition.ext
        content_type, _ = media_type_for(declared_format)
        filename = build_filename(title or video_id, declared_format)

        stream = fetch_media(rendition, svc.settings)
        logger.info(f"Proxying {video_id} format {itag} as {filename}")
        return stream_response(stream, content_type, filename)
    except ResolverError as e:
        logger.error(f"Download failed for {video_id} format {itag}: {e}")
        return error_response(str(e), e.status_code)
    except Exception as e:
        logger.exception(f"Unexpected error downloading {video_id}")
        return error_response(f'Download failed: {e}', 500)


# Endpoint 3: Download through the yt-dlp executable
@bp.route('/api/download', methods=['GET'])
def download_url():
    url = request.args.get('url', '')
    declared_format = request.args.get('format')
    itag = request.args.get('itag')

    video_id = extract_video_id(url)
    if video_id is None:
        return error_response('A valid YouTube URL is required', 400)

    svc = services()
    title = request.args.get('title') or video_id
    content_type, ext = media_type_for(declared_format)
    filename = build_filename(title, declared_format)

    try:
        if declared_format == AUDIO_ONLY:
            return download_audio_file(svc.settings, video_id, filename)

        if itag:
            selector = f"{itag}+bestaudio/{itag}"
        elif ext == "webm":
            selector = "bestvideo[ext=webm]+bestaudio[ext=webm]/best[ext=webm]/best"
        else:
            selector = None

        config = DownloadConfig.from_settings(
            watch_url(video_id),
            svc.settings,
            download_type=DownloadType.VIDEO,
            output_dir=Path(tempfile.gettempdir()),
            format=selector,
        )
        stream = Downloader(config).stream(chunk_size=svc.settings.chunk_size)
        return stream_response(stream, content_type, filename)
    except ResolverError as e:
        logger.error(f"Download failed for {video_id}: {e}")
        return error_response(str(e), e.status_code)
    except Exception as e:
        logger.exception(f"Unexpected error downloading {video_id}")
        return error_response(f'Download failed: {e}', 500)


def download_audio_file(settings: Settings, video_id: str, filename: str):
    """Extract mp3 into a temp dir and send it, removing the dir afterwards"""
    temp_dir = Path(tempfile.mkdtemp())
    config = DownloadConfig.from_settings(
        watch_url(video_id),
        settings,
        download_type=DownloadType.AUDIO,
        output_dir=temp_dir,
    )
    try:
        downloader = Downloader(config)
    except (ValueError, OSError):
        remove_dir(temp_dir)
        raise

    if not downloader.download():
        remove_dir(temp_dir)
        return error_response('Download failed', 500)

    output = downloader.find_output()
    if output is None:
        remove_dir(temp_dir)
        return error_response('No output file found', 500)

    stream = file_stream(output, settings.chunk_size, cleanup=lambda: remove_dir(temp_dir))
    return stream_response(stream, 'audio/mpeg', filename)


# Endpoint 4: Redirect to the media-locator
@bp.route('/api/stream', methods=['GET'])
def stream_redirect():
    video_id = request.args.get('videoId', '').strip()
    itag = request.args.get('itag', '').strip()

    if not video_id or not itag:
        return error_response('videoId and itag are required', 400)
    if not is_valid_video_id(video_id):
        return error_response(f'Invalid video ID: {video_id}', 400)

    try:
        rendition = services().resolver.find_rendition(video_id, itag)
        logger.info(f"Redirecting {video_id} format {itag} to direct URL")
        return redirect(rendition.url, code=302)
    except ResolverError as e:
        logger.error(f"Stream failed for {video_id} format {itag}: {e}")
        return error_response(f'Streaming error: {e}', e.status_code)
    except Exception as e:
        logger.exception(f"Unexpected error streaming {video_id}")
        return error_response(f'Streaming error: {e}', 500)
