import asyncio

from topic_preview.app import PreviewManager
from topic_preview.page import Page

from factories import BASE_URL, FakeForum, GatedLoader, listing_html, make_config, topic_row, upload


def test_start_annotates_from_preloaded_hints(tmp_path):
    async def scenario():
        config = make_config(tmp_path)
        forum = FakeForum()
        page = Page(listing_html([topic_row(1)], image_hints={1: upload("hint")}), url=f"{BASE_URL}/latest")
        manager = PreviewManager(config, page, client=forum.client(config), loader=GatedLoader())
        assert await manager.start()
        status = manager.status()
        await manager.close()
        await manager.client.aclose()
        return status, forum, page

    status, forum, page = asyncio.run(scenario())

    assert status.started
    assert status.persistent_cache
    assert status.observed_root == "main-outlet"
    assert forum.topic_requests() == []
    assert page.select_one("img.topic-preview-thumbnail")["src"] == upload("hint")


def test_unavailable_storage_falls_back_to_memory(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file")

    async def scenario():
        config = make_config(tmp_path, storage_path=str(blocker / "preview.db"))
        manager = PreviewManager(
            config,
            Page(listing_html([]), url=f"{BASE_URL}/latest"),
            client=FakeForum().client(config),
            loader=GatedLoader(),
        )
        assert await manager.start()
        status = manager.status()
        await manager.close()
        await manager.client.aclose()
        return status

    status = asyncio.run(scenario())

    assert status.started
    assert not status.persistent_cache


def test_observer_is_retried_until_the_page_has_a_body(tmp_path):
    async def scenario():
        config = make_config(tmp_path)
        page = Page("<html></html>", url=f"{BASE_URL}/latest")
        manager = PreviewManager(config, page, client=FakeForum().client(config), loader=GatedLoader())
        assert await manager.start()
        assert manager.reconciler.root is None

        page.append_child(page.soup.html, page.new_tag("body"))
        await asyncio.sleep(0.05)

        root = manager.reconciler.root
        await manager.close()
        await manager.client.aclose()
        return root, page

    root, page = asyncio.run(scenario())

    assert root is page.body


def test_from_url_falls_back_to_empty_page(tmp_path):
    async def scenario():
        config = make_config(tmp_path)
        forum = FakeForum()
        manager = await PreviewManager.from_url(config, client=forum.client(config), loader=GatedLoader())
        url, body = manager.page.url, manager.page.body
        await manager.client.aclose()
        return url, body, forum

    url, body, forum = asyncio.run(scenario())

    assert url == f"{BASE_URL}/latest"
    assert body is not None
    assert forum.requests == ["/latest"]
