import os
import json
import math
import logging
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, ValidationError, field_validator
from typing import Any, Optional, Union, List
import httpx
from youtube_transcript_api import YouTubeTranscriptApi
from youtube_transcript_api._errors import NoTranscriptFound
from youtube_transcript_api.proxies import WebshareProxyConfig

# Configure logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

# Characters per page of transcript text
CHARS_PER_PAGE = 2000

OEMBED_URL = "https://www.youtube.com/oembed"
WATCH_URL = "https://www.youtube.com/watch?v={video_id}"

NO_TRANSCRIPT_HINT = "Try another language code (en, en-US, a.en, es, fr)."

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

app = FastAPI(
    title="YouTube Transcript API",
    description="Paginated YouTube transcripts with video metadata",
    version="1.0.0"
)


class TranscriptSegment(BaseModel):
    text: str
    offset: float  # milliseconds


class PageRequest(BaseModel):
    videoId: str
    page: int = 1
    lang: Optional[str] = None

    @field_validator("page", mode="before")
    @classmethod
    def _default_page(cls, value: Any) -> Any:
        return 1 if value is None else value

    @field_validator("lang", mode="before")
    @classmethod
    def _stringify_lang(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class VideoMetadata(BaseModel):
    title: Optional[str] = None
    channel: Optional[str] = None
    thumbnailUrl: Optional[str] = None


class PageResult(BaseModel):
    videoId: str
    page: int
    totalPages: int
    estimatedDuration: str
    text: str
    hasMore: bool
    metadata: Optional[VideoMetadata] = None


class TranscriptUnavailable(BaseModel):
    """Expected absence of captions, returned as data rather than a transport error."""
    error: str = "No transcript available"
    fatal: bool = True
    hint: str = NO_TRANSCRIPT_HINT


def json_response(data: dict, status_code: int = 200) -> JSONResponse:
    """JSON response carrying the CORS origin header."""
    return JSONResponse(
        content=data,
        status_code=status_code,
        headers={"Access-Control-Allow-Origin": "*"},
    )


def get_proxy_config() -> Optional[WebshareProxyConfig]:
    """Build the optional Webshare proxy config from the environment."""
    if os.getenv("USE_PROXY", "0") != "1":
        return None

    proxy_username = os.getenv("WEBSHARE_PROXY_USERNAME")
    proxy_password = os.getenv("WEBSHARE_PROXY_PASSWORD")

    if not proxy_username or not proxy_password:
        logger.warning("Proxy enabled but credentials missing. Proceeding without proxy.")
        return None

    logger.info("Using Webshare proxy for YouTube API requests")
    return WebshareProxyConfig(
        proxy_username=proxy_username,
        proxy_password=proxy_password
    )


def fetch_transcript(video_id: str, lang: Optional[str] = None) -> List[TranscriptSegment]:
    """Fetch caption segments for a video, optionally filtered by language.

    Errors from youtube-transcript-api (video unavailable, transcripts
    disabled, no transcript in the language) propagate to the caller.
    """
    ytt_api = YouTubeTranscriptApi(proxy_config=get_proxy_config())
    transcript_list = ytt_api.list(video_id)

    if lang:
        try:
            transcript = transcript_list.find_transcript([lang])
        except NoTranscriptFound:
            # Translate any transcript that offers the requested language
            transcript = None
            for t in transcript_list:
                if t.is_translatable and lang in [tl.language_code for tl in t.translation_languages]:
                    transcript = t.translate(lang)
                    break
            if transcript is None:
                raise
    else:
        # Priority: manually created English > any manually created > auto-generated English > any auto-generated > any
        transcript = None
        try:
            transcript = transcript_list.find_manually_created_transcript(["en"])
        except NoTranscriptFound:
            transcript = next((t for t in transcript_list if not t.is_generated), None)

        if transcript is None:
            try:
                transcript = transcript_list.find_generated_transcript(["en"])
            except NoTranscriptFound:
                transcript = next((t for t in transcript_list if t.is_generated), None)

        if transcript is None:
            transcript = next(iter(transcript_list), None)

        if transcript is None:
            raise NoTranscriptFound(video_id, [], transcript_list)

    fetched_transcript = transcript.fetch()
    return [
        TranscriptSegment(text=snippet.text, offset=snippet.start * 1000)
        for snippet in fetched_transcript
    ]


async def fetch_video_metadata(video_id: str) -> Optional[VideoMetadata]:
    """Look up title, channel and thumbnail through YouTube's oEmbed endpoint.

    Best effort: any failure is logged and reported as ``None``.
    """
    params = {"url": WATCH_URL.format(video_id=video_id), "format": "json"}
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(OEMBED_URL, params=params)
        if not response.is_success:
            logger.warning(f"oEmbed lookup for {video_id} returned HTTP {response.status_code}")
            return None
        data = response.json()
        if not isinstance(data, dict):
            logger.warning(f"oEmbed returned a non-object payload for {video_id}")
            return None
        return VideoMetadata(
            title=data.get("title"),
            channel=data.get("author_name"),
            thumbnailUrl=data.get("thumbnail_url"),
        )
    except httpx.HTTPError as e:
        logger.warning(f"oEmbed fetch failed: {str(e)}")
        return None
    except ValueError as e:
        # also covers pydantic ValidationError on unexpected field types
        logger.warning(f"oEmbed returned invalid JSON for {video_id}: {str(e)}")
        return None


def count_pages(text: str, size: int = CHARS_PER_PAGE) -> int:
    """Number of pages needed for text, never less than 1."""
    return max(1, math.ceil(len(text) / size))


def clamp_page(page: int, total_pages: int) -> int:
    """Correct an out-of-range page number to the nearest valid page."""
    return min(max(1, page), total_pages)


def slice_page(text: str, page: int, size: int = CHARS_PER_PAGE) -> str:
    start = (page - 1) * size
    return text[start : start + size]


def estimate_duration(segments: List[TranscriptSegment]) -> str:
    """Format the last segment's offset as whole minutes, rounding half up."""
    minutes = math.floor(segments[-1].offset / 60000 + 0.5)
    return f"{minutes} minutes"


async def build_transcript_page(
    video_id: str, page: int = 1, lang: Optional[str] = None
) -> Union[PageResult, TranscriptUnavailable]:
    """Fetch a transcript and return one page of its text.

    The first page also carries oEmbed metadata when it can be fetched.
    """
    segments = await run_in_threadpool(fetch_transcript, video_id, lang)

    if not segments:
        logger.warning(f"Empty transcript for video {video_id} (lang={lang})")
        return TranscriptUnavailable()

    full_text = " ".join(segment.text for segment in segments)
    total_pages = count_pages(full_text)
    safe_page = clamp_page(page, total_pages)

    metadata = None
    if safe_page == 1:
        metadata = await fetch_video_metadata(video_id)

    return PageResult(
        videoId=video_id,
        page=safe_page,
        totalPages=total_pages,
        estimatedDuration=estimate_duration(segments),
        text=slice_page(full_text, safe_page),
        hasMore=safe_page < total_pages,
        metadata=metadata,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy"}


@app.options("/api/youtube-transcript")
async def transcript_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@app.exception_handler(405)
async def method_not_allowed(request: Request, exc: StarletteHTTPException):
    return json_response({"error": "Method not allowed"}, 405)


@app.post("/api/youtube-transcript")
async def get_youtube_transcript(request: Request):
    """Return one page of a video's transcript."""
    logger.info('YouTube transcript function processed a request.')

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return json_response({"error": "Invalid JSON body"}, 400)

    video_id = body.get("videoId") if isinstance(body, dict) else None
    if not video_id or not isinstance(video_id, str):
        return json_response({"error": "videoId is required and must be a string"}, 400)

    try:
        page_request = PageRequest(**body)
    except ValidationError:
        return json_response({"error": "page must be an integer"}, 400)

    try:
        result = await build_transcript_page(
            page_request.videoId, page_request.page, page_request.lang
        )
    except Exception as e:
        logger.error(f"Unexpected error processing request: {str(e)}", exc_info=True)
        return json_response(
            {"error": "Internal server error", "details": str(e)},
            500
        )

    return json_response(result.model_dump(exclude_none=True))


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
