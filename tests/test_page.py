import asyncio

from topic_preview.page import Page, PageObserver


HTML = '<html><body><div id="main-outlet"><ul><li>a</li></ul></div><p id="side"></p></body></html>'


def test_records_are_batched_per_loop_turn():
    batches = []

    async def scenario():
        page = Page(HTML)
        observer = PageObserver(page, lambda records, _: batches.append(records))
        observer.observe(page.select_one("#main-outlet"))
        ul = page.select_one("ul")

        page.append_child(ul, page.new_tag("li", text="b"))
        page.append_child(ul, page.new_tag("li", text="c"))
        page.append_child(page.select_one("#side"), page.new_tag("span"))
        assert batches == []

        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert len(batches) == 1
    assert [record.added[0].get_text() for record in batches[0]] == ["b", "c"]


def test_flush_delivers_without_a_loop():
    batches = []
    page = Page(HTML)
    observer = PageObserver(page, lambda records, _: batches.append(records))
    observer.observe(page.select_one("#main-outlet"))

    page.remove(page.select_one("li"))
    page.flush()

    assert len(batches) == 1
    assert batches[0][0].target is page.select_one("ul")


def test_removing_the_observed_root_is_reported():
    batches = []
    page = Page(HTML)
    outlet = page.select_one("#main-outlet")
    observer = PageObserver(page, lambda records, _: batches.append(records))
    observer.observe(outlet)

    page.remove(outlet)
    page.flush()

    assert not page.contains(outlet)
    assert batches[0][0].removed[0] is outlet


def test_disconnected_observer_receives_nothing():
    batches = []
    page = Page(HTML)
    observer = PageObserver(page, lambda records, _: batches.append(records))
    observer.observe(page.select_one("#main-outlet"))
    observer.disconnect()

    page.remove(page.select_one("li"))
    page.flush()

    assert batches == []


def test_navigate_swaps_outlet_children_and_url():
    page = Page(HTML, url="https://forum.example/latest")
    outlet = page.select_one("#main-outlet")

    page.navigate('<html><body><div id="main-outlet"><p>new</p></div></body></html>', url="https://forum.example/top")

    assert page.select_one("#main-outlet") is outlet
    assert outlet.get_text() == "new"
    assert page.url == "https://forum.example/top"
    assert page.absolute_url("/t/x/1") == "https://forum.example/t/x/1"


def test_navigate_can_replace_the_outlet_element():
    page = Page(HTML)
    outlet = page.select_one("#main-outlet")

    page.navigate('<div id="main-outlet"><p>new</p></div>', replace_outlet=True)

    assert page.select_one("#main-outlet") is not outlet
    assert not page.contains(outlet)


def test_click_bubbles_until_stopped():
    page = Page(HTML)
    li, outlet = page.select_one("li"), page.select_one("#main-outlet")
    seen = []
    page.add_listener(outlet, "click", lambda event: seen.append("outlet"))
    page.add_listener(li, "click", lambda event: seen.append("li"))

    page.click(li)
    assert seen == ["li", "outlet"]

    page.add_listener(li, "click", lambda event: event.stop_propagation())
    seen.clear()
    page.click(li)
    assert seen == ["li"]


def test_key_listeners_and_alerts():
    page = Page(HTML)
    keys = []

    def handler(event):
        keys.append(event.key)
        event.prevent_default()

    page.add_key_listener(handler)
    page.add_key_listener(handler)
    assert page.press_key("Escape").default_prevented
    page.remove_key_listener(handler)
    assert not page.press_key("Escape").default_prevented
    assert keys == ["Escape"]

    page.alert("stop")
    assert page.alerts == ["stop"]


def test_removed_subtrees_drop_their_listeners():
    page = Page(HTML)
    ul = page.select_one("ul")

    for _ in range(100):
        item = page.new_tag("li")
        button = page.new_tag("button")
        item.append(button)
        page.append_child(ul, item)
        page.add_listener(item, "click", lambda event: None)
        page.add_listener(button, "click", lambda event: None)
        page.remove(item)

    assert page.listener_count == 0


def test_moving_an_element_keeps_its_listeners():
    page = Page(HTML)
    li = page.select_one("li")
    seen = []
    page.add_listener(li, "click", lambda event: seen.append("li"))

    page.append_child(page.select_one("#side"), li)
    page.click(li)

    assert seen == ["li"]


def test_navigate_forgets_listeners_of_replaced_content():
    page = Page(HTML)
    page.add_listener(page.select_one("li"), "click", lambda event: None)
    page.add_listener(page.select_one("ul"), "click", lambda event: None)

    page.navigate('<div id="main-outlet"><p>new</p></div>')
    assert page.listener_count == 0

    page.add_listener(page.select_one("p"), "click", lambda event: None)
    page.navigate('<div id="main-outlet"><p>newer</p></div>', replace_outlet=True)
    assert page.listener_count == 0
