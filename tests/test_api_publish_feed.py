from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

from fastapi import HTTPException
import pytest

import api.main as api_main
from api_fakes import feed_entry
from db.store import FeedPage


def _publish(generation_id, visibility="public", **kwargs):
    return api_main.PublishRequest(generation_id=generation_id, visibility=visibility, **kwargs)


def test_publish_creates_post_and_updates_assets(fake_store) -> None:
    generation = fake_store.add_generation(
        status="complete",
        prompt_text="what if every streetlight in the city turned into a tiny sun at midnight and nobody in the whole town could sleep for a week",
    )

    payload = api_main.publish_generation(
        _publish(generation.id, "unlisted", alt_text="tiny suns", captions="city at night"),
        x_user_id="user-7",
    )

    assert payload["visibility"] == "public"
    assert payload["author_id"] == "user-7"
    assert payload["thumbnail_url"] == "/generated/generations/x/0.png"
    assert payload["prompt_summary"].endswith("...")
    assert len(payload["prompt_summary"]) <= 100
    assert fake_store.visibility_updates == [
        {
            "generation_id": generation.id,
            "visibility": "unlisted",
            "alt_text": "tiny suns",
            "captions": "city at night",
        }
    ]


def test_publish_twice_conflicts(fake_store) -> None:
    generation = fake_store.add_generation(status="complete")
    api_main.publish_generation(_publish(generation.id), x_user_id=None)

    with pytest.raises(HTTPException) as exc_info:
        api_main.publish_generation(_publish(generation.id), x_user_id=None)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "already_published"
    assert len(fake_store.posts) == 1


def test_publish_error_paths(fake_store) -> None:
    with pytest.raises(HTTPException) as exc_info:
        api_main.publish_generation(_publish(uuid4()), x_user_id=None)
    assert exc_info.value.status_code == 404

    running = fake_store.add_generation(status="running")
    with pytest.raises(HTTPException) as exc_info:
        api_main.publish_generation(_publish(running.id), x_user_id=None)
    assert exc_info.value.status_code == 400

    orphan = fake_store.add_generation(status="complete")
    fake_store.prompts.pop(orphan.prompt_id)
    with pytest.raises(HTTPException) as exc_info:
        api_main.publish_generation(_publish(orphan.id), x_user_id=None)
    assert exc_info.value.status_code == 500
    assert exc_info.value.detail == "prompt_not_found"


def test_feed_enriches_items(fake_store) -> None:
    video = fake_store.add_generation(status="complete", gen_type="video")
    image = fake_store.add_generation(status="complete")
    video_post = fake_store.create_community_post(
        generation_id=video.id, author_id="u1", prompt_summary="waves", thumbnail_url="/v.png"
    )
    image_post = fake_store.create_community_post(
        generation_id=image.id, author_id="u2", prompt_summary="cats", thumbnail_url="/i.png"
    )
    fake_store.feed_page = FeedPage(
        items=[
            feed_entry(video_post, video, SimpleNamespace(display_name="Ada", photo_url="https://p/ada.png")),
            feed_entry(image_post, image, None),
        ],
        next_page=2,
        total_count=14,
    )

    payload = api_main.get_feed(q="wave", page=1, page_size=2, author_id=None, type=None)

    assert payload["next_page"] == 2
    assert payload["total_count"] == 14
    first, second = payload["items"]
    assert first["author_display_name"] == "Ada"
    assert first["author_photo_url"] == "https://p/ada.png"
    assert first["generation_type"] == "video"
    assert first["asset_format"] == "mp4"
    assert second["author_display_name"] == "Anonymous"
    assert second["asset_format"] == "png"
    assert fake_store.feed_calls == [
        {"page": 1, "page_size": 2, "q": "wave", "author_id": None, "generation_type": None}
    ]
