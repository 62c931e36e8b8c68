"""In-process model of the host page the augmentation runs inside.

The page is a BeautifulSoup document plus the small slice of browser
behaviour the augmentation relies on: structural mutations reported to
observers in batches, element events that bubble to ancestors, document
level key listeners and blocking alerts.

Elements are always compared by identity. BeautifulSoup's ``Tag.__eq__``
compares markup, so two identical rows would otherwise be indistinguishable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import PageElement, Tag

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MutationRecord:
    target: Tag
    added: list[PageElement] = field(default_factory=list)
    removed: list[PageElement] = field(default_factory=list)
    type: str = "childList"


@dataclass(slots=True)
class ElementEvent:
    type: str
    target: Tag
    propagation_stopped: bool = False
    default_prevented: bool = False

    def stop_propagation(self) -> None:
        self.propagation_stopped = True

    def prevent_default(self) -> None:
        self.default_prevented = True


@dataclass(slots=True)
class KeyEvent:
    key: str
    target: Optional[Tag] = None
    propagation_stopped: bool = False
    default_prevented: bool = False

    def stop_propagation(self) -> None:
        self.propagation_stopped = True

    def prevent_default(self) -> None:
        self.default_prevented = True


EventHandler = Callable[[ElementEvent], None]
KeyHandler = Callable[[KeyEvent], None]
MutationCallback = Callable[[list[MutationRecord], "PageObserver"], None]


def _is_inclusive_ancestor(ancestor: Tag, node: PageElement) -> bool:
    current: Optional[PageElement] = node
    while current is not None:
        if current is ancestor:
            return True
        current = current.parent
    return False


class PageObserver:
    """Receives batches of structural changes below one root element."""

    def __init__(self, page: "Page", callback: MutationCallback) -> None:
        self.page = page
        self.callback = callback
        self.root: Optional[Tag] = None
        self._pending: list[MutationRecord] = []
        self._scheduled = False

    def observe(self, root: Tag) -> None:
        self.root = root
        self._pending.clear()
        self.page._attach_observer(self)

    def disconnect(self) -> None:
        self.root = None
        self._pending.clear()
        self.page._detach_observer(self)

    def take_records(self) -> list[MutationRecord]:
        records = self._pending
        self._pending = []
        return records

    def _enqueue(self, record: MutationRecord) -> None:
        if self.root is None:
            return
        inside = _is_inclusive_ancestor(self.root, record.target)
        # Detaching the root itself is reported too, so the observer can move.
        if not inside and not any(
            isinstance(node, Tag) and _is_inclusive_ancestor(node, self.root)
            for node in record.removed
        ):
            return
        self._pending.append(record)
        if self._scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Without a running loop records wait for Page.flush().
            return
        self._scheduled = True
        loop.call_soon(self._deliver)

    def _deliver(self) -> None:
        self._scheduled = False
        records = self.take_records()
        if not records or self.root is None:
            return
        try:
            self.callback(records, self)
        except Exception:  # pragma: no cover - host boundary
            LOGGER.exception("Mutation observer callback failed")


class Page:
    """A parsed document with browser-like mutation and event plumbing."""

    def __init__(self, html: str, url: str = "") -> None:
        self.url = url
        self.soup = BeautifulSoup(html, "html.parser")
        self.alerts: list[str] = []
        self._observers: list[PageObserver] = []
        self._listeners: dict[int, tuple[Tag, dict[str, list[EventHandler]]]] = {}
        self._key_listeners: list[KeyHandler] = []

    @property
    def body(self) -> Optional[Tag]:
        return self.soup.body

    def select(self, selector: str) -> list[Tag]:
        return list(self.soup.select(selector))

    def select_one(self, selector: str) -> Optional[Tag]:
        return self.soup.select_one(selector)

    def contains(self, node: Optional[PageElement]) -> bool:
        """Return ``True`` when *node* is currently attached to this document."""

        if node is None:
            return False
        return _is_inclusive_ancestor(self.soup, node)

    def absolute_url(self, value: Optional[str]) -> str:
        if not value:
            return ""
        if not self.url:
            return value
        return urljoin(self.url, value)

    def new_tag(
        self,
        name: str,
        *,
        classes: Iterable[str] = (),
        attrs: Optional[dict[str, str]] = None,
        text: Optional[str] = None,
    ) -> Tag:
        tag = self.soup.new_tag(name, attrs=dict(attrs or {}))
        class_list = [cls for cls in classes if cls]
        if class_list:
            tag["class"] = class_list
        if text is not None:
            tag.string = text
        return tag

    # -- structural mutations -------------------------------------------------

    def append_child(self, parent: Tag, child: PageElement) -> PageElement:
        if child.parent is not None:
            self._detach(child)
        parent.append(child)
        self._record(parent, added=[child])
        return child

    def insert_first(self, parent: Tag, child: PageElement) -> PageElement:
        if child.parent is not None:
            self._detach(child)
        parent.insert(0, child)
        self._record(parent, added=[child])
        return child

    def remove(self, node: PageElement) -> None:
        """Take *node* out of the document and drop the listeners of its subtree."""

        if self._detach(node):
            self._forget_listeners(node)

    def _detach(self, node: PageElement) -> bool:
        parent = node.parent
        if parent is None:
            return False
        node.extract()
        self._record(parent, removed=[node])
        return True

    def replace(self, old: PageElement, new: PageElement) -> None:
        parent = old.parent
        if parent is None:
            return
        if new.parent is not None:
            new.extract()
        old.replace_with(new)
        self._record(parent, added=[new], removed=[old])
        self._forget_listeners(old)

    def replace_children(self, parent: Tag, children: Iterable[PageElement]) -> None:
        incoming = list(children)
        removed = list(parent.contents)
        for node in removed:
            node.extract()
            self._forget_listeners(node)
        for node in incoming:
            if node.parent is not None:
                node.extract()
            parent.append(node)
        self._record(parent, added=incoming, removed=removed)

    def navigate(
        self,
        html: str,
        *,
        url: Optional[str] = None,
        replace_outlet: bool = False,
        outlet_selector: str = "#main-outlet",
        preloaded_selector: str = "#data-preloaded",
    ) -> None:
        """Swap in the content of another page the way in-app navigation does.

        The main outlet keeps its identity unless *replace_outlet* is set, in
        which case the element itself is exchanged for the incoming one.
        """

        incoming = BeautifulSoup(html, "html.parser")
        if url:
            self.url = url

        new_outlet = incoming.select_one(outlet_selector)
        if new_outlet is not None:
            content = list(new_outlet.contents)
        elif incoming.body is not None:
            content = list(incoming.body.contents)
        else:
            content = list(incoming.contents)

        current = self.soup.select_one(outlet_selector)
        if current is not None and replace_outlet and new_outlet is not None:
            self.replace(current, new_outlet)
        elif current is not None:
            self.replace_children(current, content)
        elif self.body is not None:
            self.replace_children(self.body, content)

        new_data = incoming.select_one(preloaded_selector)
        if new_data is not None:
            old_data = self.soup.select_one(preloaded_selector)
            if old_data is not None:
                self.replace(old_data, new_data)
            elif self.body is not None:
                self.append_child(self.body, new_data)

    def flush(self) -> None:
        """Deliver pending mutation records synchronously."""

        for observer in list(self._observers):
            observer._deliver()

    def _record(
        self,
        target: Tag,
        *,
        added: Iterable[PageElement] = (),
        removed: Iterable[PageElement] = (),
    ) -> None:
        record = MutationRecord(target=target, added=list(added), removed=list(removed))
        for observer in list(self._observers):
            observer._enqueue(record)

    def _attach_observer(self, observer: PageObserver) -> None:
        if not any(existing is observer for existing in self._observers):
            self._observers.append(observer)

    def _detach_observer(self, observer: PageObserver) -> None:
        self._observers = [existing for existing in self._observers if existing is not observer]

    # -- events ------------------------------------------------------------------

    def add_listener(self, tag: Tag, event_type: str, handler: EventHandler) -> None:
        entry = self._listeners.get(id(tag))
        if entry is None or entry[0] is not tag:
            entry = (tag, {})
            self._listeners[id(tag)] = entry
        bucket = entry[1].setdefault(event_type, [])
        if handler not in bucket:
            bucket.append(handler)

    def _forget_listeners(self, node: PageElement) -> None:
        if not self._listeners:
            return
        nodes = [node]
        if isinstance(node, Tag):
            nodes.extend(node.descendants)
        for item in nodes:
            entry = self._listeners.get(id(item))
            if entry is not None and entry[0] is item:
                del self._listeners[id(item)]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def dispatch(self, tag: Tag, event_type: str) -> ElementEvent:
        event = ElementEvent(type=event_type, target=tag)
        node: Optional[PageElement] = tag
        while node is not None and not event.propagation_stopped:
            entry = self._listeners.get(id(node))
            if entry is not None and entry[0] is node:
                for handler in list(entry[1].get(event_type, [])):
                    handler(event)
            node = node.parent
        return event

    def click(self, tag: Tag) -> ElementEvent:
        return self.dispatch(tag, "click")

    def add_key_listener(self, handler: KeyHandler) -> None:
        if handler not in self._key_listeners:
            self._key_listeners.append(handler)

    def remove_key_listener(self, handler: KeyHandler) -> None:
        if handler in self._key_listeners:
            self._key_listeners.remove(handler)

    def has_key_listener(self, handler: KeyHandler) -> bool:
        return handler in self._key_listeners

    def press_key(self, key: str, target: Optional[Tag] = None) -> KeyEvent:
        event = KeyEvent(key=key, target=target)
        for handler in list(self._key_listeners):
            handler(event)
            if event.propagation_stopped:
                break
        return event

    def alert(self, message: str) -> None:
        LOGGER.warning("Blocking alert: %s", message)
        self.alerts.append(message)


__all__ = [
    "ElementEvent",
    "KeyEvent",
    "MutationRecord",
    "Page",
    "PageObserver",
]
