"""Minimal DOM tree used by the browser UI controller."""

from __future__ import annotations

from collections.abc import Callable, Iterator


class Element:
    """A DOM element node."""

    def __init__(
        self,
        tag: str,
        id: str | None = None,
        classes: tuple[str, ...] | list[str] = (),
        text: str = "",
    ):
        self.tag = tag
        self.id = id
        self.class_list: set[str] = set(classes)
        self.dataset: dict[str, str] = {}
        self.children: list[Element] = []
        self.parent: Element | None = None
        self.text = text
        self.value = ""

    def __repr__(self) -> str:
        ident = f"#{self.id}" if self.id else ""
        classes = "".join(f".{c}" for c in sorted(self.class_list))
        return f"<{self.tag}{ident}{classes}>"

    def has_class(self, name: str) -> bool:
        return name in self.class_list

    def append_child(self, child: Element) -> Element:
        if child.parent is not None:
            child.remove()
        child.parent = self
        self.children.append(child)
        return child

    def remove(self) -> None:
        """Detach from the parent. Detached elements are left untouched."""
        if self.parent is not None:
            self.parent.children.remove(self)
            self.parent = None

    def clear(self) -> None:
        """Drop all children and text (``innerHTML = ''``)."""
        for child in list(self.children):
            child.remove()
        self.text = ""

    def iter(self) -> Iterator[Element]:
        """Pre-order walk including this element."""
        yield self
        for child in self.children:
            yield from child.iter()

    def find(self, predicate: Callable[[Element], bool]) -> Element | None:
        return next((node for node in self.iter() if predicate(node)), None)

    def closest(self, predicate: Callable[[Element], bool]) -> Element | None:
        node: Element | None = self
        while node is not None:
            if predicate(node):
                return node
            node = node.parent
        return None

    @property
    def text_content(self) -> str:
        return self.text + "".join(child.text_content for child in self.children)


class Document:
    """Root of the element tree."""

    def __init__(self) -> None:
        self.body = Element("body")

    def create_element(self, tag: str, **kwargs) -> Element:
        return Element(tag, **kwargs)

    def get_element_by_id(self, element_id: str) -> Element | None:
        return self.body.find(lambda node: node.id == element_id)

    def query_by_class(self, name: str) -> list[Element]:
        return [node for node in self.body.iter() if node.has_class(name)]
