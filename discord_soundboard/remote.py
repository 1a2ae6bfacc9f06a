"""Remote stream resolution through yt-dlp."""

import asyncio
import logging
import re

import discord
import yt_dlp

from .errors import RemoteSourceError

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)

YTDL_OPTIONS = {
    "format": "bestaudio/best",
    "noplaylist": True,
    "quiet": True,
    "no_warnings": True,
    "logtostderr": False,
    "default_search": "error",
    "source_address": "0.0.0.0",
}

FFMPEG_OPTIONS = {
    "before_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5",
    "options": "-vn",
}


def is_remote_url(argument: str) -> bool:
    return bool(URL_PATTERN.match(argument.strip()))


def _extract(url: str) -> dict:
    with yt_dlp.YoutubeDL(YTDL_OPTIONS) as ytdl:
        data = ytdl.extract_info(url, download=False)
    if data and "entries" in data:
        entries = [e for e in data["entries"] if e]
        if not entries:
            raise yt_dlp.utils.DownloadError(f"No playable entries at {url}")
        data = entries[0]
    if not data or not data.get("url"):
        raise yt_dlp.utils.DownloadError(f"No stream URL found at {url}")
    return data


async def fetch_stream(url: str) -> discord.AudioSource:
    """Resolve `url` to a streaming ffmpeg source without downloading it.

    Any extractor failure is raised as `RemoteSourceError` carrying the
    extractor's own message.
    """
    loop = asyncio.get_running_loop()
    try:
        data = await loop.run_in_executor(None, _extract, url)
    except Exception as exc:
        logger.warning(f"Error streaming remote source {url}: {exc}")
        raise RemoteSourceError(url, f"Error streaming remote source: {exc}") from exc
    logger.debug(f"Resolved {url} to stream {data.get('title')!r}")
    return discord.FFmpegPCMAudio(data["url"], **FFMPEG_OPTIONS)
