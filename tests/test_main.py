from fastapi.testclient import TestClient

from topic_preview.app import PreviewManager
from topic_preview.main import create_app
from topic_preview.page import Page

from factories import (
    BASE_URL,
    FakeForum,
    GatedLoader,
    listing_html,
    make_config,
    topic_row,
    upload,
)

IMAGES = [upload("first"), upload("second")]


def build_client(tmp_path):
    config = make_config(tmp_path)
    forum = FakeForum()
    forum.add_topic(1, IMAGES)
    page = Page(
        listing_html([topic_row(1, title="Sunsets")], image_hints={1: upload("first")}),
        url=f"{BASE_URL}/latest",
    )
    manager = PreviewManager(config, page, client=forum.client(config), loader=GatedLoader())
    return TestClient(create_app(config, manager=manager)), forum


def test_status_reports_started_manager(tmp_path):
    client, _ = build_client(tmp_path)
    with client:
        response = client.get("/api/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["started"] is True
    assert payload["observed_root"] == "main-outlet"
    assert payload["persistent_cache"] is True
    assert payload["queue_size"] == 0
    assert payload["listeners"] == 6
    assert payload["gallery"]["phase"] == "closed"


def test_page_contains_previews_and_overlay(tmp_path):
    client, _ = build_client(tmp_path)
    with client:
        response = client.get("/api/page")

    assert response.status_code == 200
    assert "cg-gallery-overlay" in response.text
    assert upload("first") in response.text


def test_click_key_and_close_drive_the_gallery(tmp_path):
    client, forum = build_client(tmp_path)
    with client:
        opened = client.post("/api/topics/t1/click").json()
        assert opened["visible"] is True
        assert opened["images"] == IMAGES
        assert opened["topic_title"] == "Sunsets"
        assert opened["author_name"] == "alice"
        assert opened["status_text"] == "1 / 2"
        assert forum.topic_requests() == ["/t/topic-1/1"]

        moved = client.post("/api/gallery/key", json={"key": "ArrowRight"}).json()
        assert moved["handled"] is True
        assert moved["gallery"]["current_index"] == 1
        assert moved["gallery"]["image_source"] == upload("second")

        closed = client.post("/api/gallery/close").json()
        assert closed["visible"] is False
        assert closed["phase"] == "closed"
        assert closed["images"] == []

        ignored = client.post("/api/gallery/key", json={"key": "ArrowRight"}).json()
        assert ignored["handled"] is False


def test_unknown_topic_click_is_not_found(tmp_path):
    client, _ = build_client(tmp_path)
    with client:
        response = client.post("/api/topics/t404/click")

    assert response.status_code == 404


def test_navigate_replaces_listing(tmp_path):
    client, forum = build_client(tmp_path)
    forum.pages["/top"] = listing_html([topic_row(2)], image_hints={2: upload("top")})
    with client:
        response = client.post("/api/navigate", json={"url": "/top", "replace_outlet": True})
        page = client.get("/api/page").text

    assert response.status_code == 200
    payload = response.json()
    assert payload["url"] == f"{BASE_URL}/top"
    assert payload["observed_root"] == "main-outlet"
    assert payload["significant_changes"] == 1
    assert payload["listeners"] == 6
    assert upload("top") in page


def test_navigate_failure_is_bad_gateway(tmp_path):
    client, _ = build_client(tmp_path)
    with client:
        response = client.post("/api/navigate", json={"url": "/missing"})

    assert response.status_code == 502
