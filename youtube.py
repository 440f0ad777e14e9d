"""YouTube Data API v3 lookups for course videos."""
import logging
import math
import re
from typing import Any, Dict, List, Mapping, Optional

import requests

logger = logging.getLogger(__name__)

MIN_DURATION_SECONDS = 60
MIN_VIEW_COUNT = 1000
TOP_RESULTS = 3

EDUCATIONAL_CHANNELS = (
    "Khan Academy",
    "Crash Course",
    "TED-Ed",
    "TED",
    "Veritasium",
    "3Blue1Brown",
    "Vsauce",
    "PBS Space Time",
    "Physics Girl",
    "MinutePhysics",
    "SciShow",
    "Numberphile",
    "Smarter Every Day",
    "Kurzgesagt",
    "Computerphile",
    "freeCodeCamp",
    "The Net Ninja",
    "Traversy Media",
    "Academind",
    "Programming with Mosh",
    "CS Dojo",
    "sentdex",
    "Corey Schafer",
    "Tech With Tim",
    "Fireship",
    "Web Dev Simplified",
    "Kevin Powell",
    "The Coding Train",
    "Hussein Nasser",
    "ByteByteGo",
    "Google Cloud Tech",
    "Microsoft Developer",
    "IBM Technology",
    "MIT OpenCourseWare",
    "Stanford Online",
    "Harvard Online",
    "Coursera",
    "edX",
    "Udacity",
)

_DURATION_RE = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")


def duration_seconds(iso_duration: Optional[str]) -> int:
    """``PT1H2M3S`` -> 3723; unparseable input is 0."""
    match = _DURATION_RE.match(iso_duration or "")
    if not match:
        return 0
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def format_duration(iso_duration: Optional[str]) -> str:
    """``PT4M13S`` -> ``4:13``; hours add a leading field."""
    total = duration_seconds(iso_duration)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def is_educational_channel(channel_name: str) -> bool:
    name = (channel_name or "").lower()
    if not name:
        return False
    return any(c.lower() in name or name in c.lower() for c in EDUCATIONAL_CHANNELS)


def _video_from_item(item: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    snippet = item.get("snippet")
    video_id = item.get("id")
    if not snippet or not video_id:
        return None
    iso = (item.get("contentDetails") or {}).get("duration") or "PT0S"
    thumbnails = snippet.get("thumbnails") or {}
    try:
        views = int((item.get("statistics") or {}).get("viewCount") or 0)
    except (TypeError, ValueError):
        views = 0
    return {
        "id": video_id,
        "title": snippet.get("title") or "Untitled Video",
        "url": f"https://www.youtube.com/watch?v={video_id}",
        "channelName": snippet.get("channelTitle") or "Unknown Channel",
        "channelId": snippet.get("channelId") or "",
        "duration": format_duration(iso),
        "durationInSeconds": duration_seconds(iso),
        "description": snippet.get("description") or "",
        "viewCount": views,
        "publishedAt": snippet.get("publishedAt") or "",
        "thumbnailUrl": (thumbnails.get("medium") or thumbnails.get("default") or {}).get("url", ""),
    }


def rank_score(video: Mapping[str, Any]) -> float:
    return video["viewCount"] * math.log(video["durationInSeconds"] + 1)


class YouTubeClient:
    def __init__(self, api_key: Optional[str], base_url: str = "https://www.googleapis.com/youtube/v3", timeout: float = 30):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get(self, resource: str, params: Dict[str, Any]) -> Dict[str, Any]:
        r = requests.get(
            f"{self.base_url}/{resource}",
            params={**params, "key": self.api_key},
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json()

    def _video_details(self, video_ids: List[str]) -> List[Dict[str, Any]]:
        data = self._get("videos", {"part": "snippet,contentDetails,statistics", "id": ",".join(video_ids)})
        videos = [_video_from_item(item) for item in data.get("items") or []]
        return [video for video in videos if video is not None]

    def search_educational_videos(self, query: str, max_results: int = 5) -> List[Dict[str, Any]]:
        if not self.configured:
            logger.warning("No YouTube API key available, returning empty results")
            return []
        variants = [
            f"{query} explained tutorial",
            f"{query} for beginners complete guide",
            f"{query} fundamentals basics",
            f"{query} introduction overview",
        ]
        video_ids: List[str] = []
        for variant in variants:
            try:
                data = self._get(
                    "search",
                    {
                        "part": "snippet",
                        "q": variant,
                        "type": "video",
                        "maxResults": math.ceil(max_results / 2),
                        "order": "relevance",
                        "safeSearch": "strict",
                        "relevanceLanguage": "en",
                        "regionCode": "US",
                    },
                )
            except (requests.RequestException, ValueError) as exc:
                logger.warning("YouTube search failed for %r: %s", variant, exc)
                continue
            for item in data.get("items") or []:
                video_id = (item.get("id") or {}).get("videoId")
                if video_id and video_id not in video_ids:
                    video_ids.append(video_id)

        video_ids = video_ids[: max_results * 2]
        if not video_ids:
            logger.warning("No videos found for query: %s", query)
            return []
        try:
            videos = self._video_details(video_ids)
        except (requests.RequestException, ValueError) as exc:
            logger.error("YouTube video lookup failed for %r: %s", query, exc)
            return []

        selected = [
            video
            for video in videos
            if video["durationInSeconds"] >= MIN_DURATION_SECONDS
            and video["viewCount"] >= MIN_VIEW_COUNT
            and is_educational_channel(video["channelName"])
        ]
        selected.sort(key=rank_score, reverse=True)
        logger.info("Found %s educational videos for query: %s", len(selected[:TOP_RESULTS]), query)
        return selected[:TOP_RESULTS]

    def get_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        if not self.configured:
            return None
        try:
            videos = self._video_details([video_id])
        except (requests.RequestException, ValueError) as exc:
            logger.error("Error getting video %s: %s", video_id, exc)
            return None
        return videos[0] if videos else None
