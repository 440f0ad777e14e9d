import pytest
import requests

import youtube
from youtube import YouTubeClient, duration_seconds, format_duration, is_educational_channel, rank_score


@pytest.mark.parametrize(
    "iso, seconds, text",
    [
        ("PT4M13S", 253, "4:13"),
        ("PT1H2M3S", 3723, "1:02:03"),
        ("PT45S", 45, "0:45"),
        ("PT10M", 600, "10:00"),
        ("garbage", 0, "0:00"),
        (None, 0, "0:00"),
    ],
)
def test_durations(iso, seconds, text):
    assert duration_seconds(iso) == seconds
    assert format_duration(iso) == text


def test_educational_channel_matching():
    assert is_educational_channel("Khan Academy")
    assert is_educational_channel("khan academy official")
    assert is_educational_channel("CrashCourse") is False
    assert is_educational_channel("") is False
    assert is_educational_channel("Random Vlogs") is False


def _item(video_id, channel, duration, views):
    return {
        "id": video_id,
        "snippet": {"title": f"Video {video_id}", "channelTitle": channel, "thumbnails": {"medium": {"url": "thumb"}}},
        "contentDetails": {"duration": duration},
        "statistics": {"viewCount": str(views)},
    }


@pytest.fixture
def api(monkeypatch):
    state = {"calls": [], "search_ids": ["a", "b", "c", "d", "e", "f"], "details": [], "fail_search": False}

    class Response:
        def __init__(self, payload):
            self.payload = payload

        def raise_for_status(self):
            pass

        def json(self):
            return self.payload

    def fake_get(url, params=None, timeout=None):
        state["calls"].append((url, dict(params or {})))
        if url.endswith("/search"):
            if state["fail_search"]:
                raise requests.ConnectionError("offline")
            return Response({"items": [{"id": {"videoId": vid}} for vid in state["search_ids"]]})
        return Response({"items": state["details"]})

    monkeypatch.setattr(youtube.requests, "get", fake_get)
    return state


def test_search_filters_and_ranks(api):
    api["details"] = [
        _item("a", "Khan Academy", "PT10M", 50_000),
        _item("b", "Khan Academy", "PT30S", 900_000),
        _item("c", "Random Vlogs", "PT20M", 900_000),
        _item("d", "TED-Ed", "PT5M", 500),
        _item("e", "3Blue1Brown", "PT15M", 2_000_000),
        _item("f", "Veritasium", "PT12M", 10_000),
    ]

    videos = YouTubeClient("yt-key", "https://yt.test").search_educational_videos("algebra")

    assert [v["id"] for v in videos] == ["e", "a", "f"]
    assert videos[0]["url"] == "https://www.youtube.com/watch?v=e"
    assert videos[0]["duration"] == "15:00"
    assert rank_score(videos[0]) > rank_score(videos[1]) > rank_score(videos[2])

    searches = [params for url, params in api["calls"] if url.endswith("/search")]
    assert len(searches) == 4
    assert searches[0]["q"] == "algebra explained tutorial"
    assert all(p["key"] == "yt-key" and p["safeSearch"] == "strict" for p in searches)


def test_search_without_key_returns_nothing(api):
    assert YouTubeClient(None).search_educational_videos("algebra") == []
    assert api["calls"] == []


def test_search_failure_returns_nothing(api):
    api["fail_search"] = True
    assert YouTubeClient("yt-key").search_educational_videos("algebra") == []


def test_get_video(api):
    api["details"] = [_item("a", "Khan Academy", "PT3M", 10)]
    video = YouTubeClient("yt-key").get_video("a")
    assert video["channelName"] == "Khan Academy"
    assert video["durationInSeconds"] == 180
    assert YouTubeClient(None).get_video("a") is None
