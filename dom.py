"""
DOM — Modelo de documento vivo sobre el que trabaja el detector
================================================================
El detector no controla la página: las extensiones inyectan nodos cuando
quieren, a veces dentro de fragmentos aislados (shadow roots) que un
escaneo ingenuo del documento no ve.

Este módulo reproduce lo mínimo de un DOM de navegador para expresar eso:

    Document ─ html ─ head
                    └ body ─ ... ─ Element ══ ShadowRoot ─ ... (aislado)

  - Element.outer_html NO incluye el contenido de su shadow root.
  - Las mutaciones notifican a los MutationObserver registrados en el
    nodo o en un ancestro del mismo árbol; nunca cruzan la frontera de
    un shadow root (hace falta observarlo explícitamente).
  - attach_shadow() no genera mutación (igual que en el navegador):
    por eso el detector necesita un escaneo periódico de respaldo.

parse_html() construye un Document desde HTML con BeautifulSoup y
traduce los shadow roots declarativos (<template shadowrootmode="open">).
"""

import html
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Union

from bs4 import BeautifulSoup
from bs4.element import CData, Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag

VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})

STRUCTURAL_TAGS = frozenset({"html", "head", "body"})


# ═══════════════════════════════════════════════════════════════════════
# MUTACIONES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class MutationRecord:
    type: str                                   # "childList" | "attributes"
    target: "Node"
    added_nodes: List["Node"] = field(default_factory=list)
    removed_nodes: List["Node"] = field(default_factory=list)
    attribute_name: Optional[str] = None
    old_value: Optional[str] = None


class MutationObserver:
    """
    Suscripción a cambios de un subárbol.

    La entrega es síncrona: el callback recibe (records, observer) en el
    momento de la mutación.
    """

    def __init__(self, callback: Callable[[List[MutationRecord], "MutationObserver"], None]):
        self._callback = callback
        self._targets: List["Node"] = []

    def observe(self, target: "Node", child_list: bool = True, attributes: bool = True, subtree: bool = True):
        options = {"child_list": child_list, "attributes": attributes, "subtree": subtree}
        target._observers.append((self, options))
        self._targets.append(target)

    def disconnect(self):
        for target in self._targets:
            target._observers = [(obs, opts) for obs, opts in target._observers if obs is not self]
        self._targets = []

    @property
    def is_observing(self) -> bool:
        return bool(self._targets)

    def _deliver(self, record: MutationRecord):
        self._callback([record], self)


# ═══════════════════════════════════════════════════════════════════════
# NODOS
# ═══════════════════════════════════════════════════════════════════════

class Node:
    def __init__(self):
        self.parent: Optional["Container"] = None
        self._observers: list = []

    def tree_root(self) -> "Node":
        """Raíz del árbol al que pertenece el nodo (Document, ShadowRoot o nodo suelto)."""
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    @property
    def is_connected(self) -> bool:
        root = self.tree_root()
        if isinstance(root, Document):
            return True
        if isinstance(root, ShadowRoot):
            return root.host.is_connected
        return False

    def _notify(self, record: MutationRecord):
        """Propaga la mutación hacia arriba sin salir del árbol (ni del shadow root)."""
        node = self
        direct = True
        while node is not None:
            for observer, options in list(node._observers):
                if not direct and not options["subtree"]:
                    continue
                if record.type == "childList" and not options["child_list"]:
                    continue
                if record.type == "attributes" and not options["attributes"]:
                    continue
                observer._deliver(record)
            node = node.parent
            direct = False

    def remove(self):
        if self.parent is None:
            raise ValueError("El nodo no tiene padre")
        self.parent.remove_child(self)


class TextNode(Node):
    def __init__(self, data: str):
        super().__init__()
        self.data = data

    @property
    def text_content(self) -> str:
        return self.data

    @property
    def outer_html(self) -> str:
        return html.escape(self.data, quote=False)


class Container(Node):
    """Nodo con hijos: Element, ShadowRoot y Document."""

    def __init__(self):
        super().__init__()
        self.children: List[Node] = []

    def append_child(self, node: Node) -> Node:
        if node.parent is not None:
            node.parent.remove_child(node)
        node.parent = self
        self.children.append(node)
        self._notify(MutationRecord(type="childList", target=self, added_nodes=[node]))
        return node

    def insert_before(self, node: Node, reference: Optional[Node]) -> Node:
        if reference is None:
            return self.append_child(node)
        if node.parent is not None:
            node.parent.remove_child(node)
        index = self.children.index(reference)
        node.parent = self
        self.children.insert(index, node)
        self._notify(MutationRecord(type="childList", target=self, added_nodes=[node]))
        return node

    def remove_child(self, node: Node) -> Node:
        if node.parent is not self:
            raise ValueError("El nodo no es hijo de este contenedor")
        self.children.remove(node)
        node.parent = None
        self._notify(MutationRecord(type="childList", target=self, removed_nodes=[node]))
        return node

    def element_children(self) -> List["Element"]:
        return [c for c in self.children if isinstance(c, Element)]

    def iter_descendants(self) -> Iterator["Element"]:
        """Todos los elementos del árbol en orden de documento (sin entrar en shadow roots)."""
        stack = list(reversed(self.element_children()))
        while stack:
            element = stack.pop()
            yield element
            stack.extend(reversed(element.element_children()))

    def query_all(self, predicate: Callable[["Element"], bool]) -> List["Element"]:
        return [e for e in self.iter_descendants() if predicate(e)]

    def get_element_by_id(self, element_id: str) -> Optional["Element"]:
        for element in self.iter_descendants():
            if element.id == element_id:
                return element
        return None

    @property
    def inner_html(self) -> str:
        return "".join(child.outer_html for child in self.children)

    def set_inner_html(self, markup: str):
        for child in list(self.children):
            self.remove_child(child)
        for node in parse_fragment(markup):
            self.append_child(node)

    @property
    def text_content(self) -> str:
        return "".join(child.text_content for child in self.children)


class Element(Container):
    def __init__(self, tag: str, attrs: Optional[Dict[str, str]] = None, text: Optional[str] = None):
        super().__init__()
        self.tag = tag.lower()
        self.attrs: Dict[str, str] = dict(attrs or {})
        self.shadow_root: Optional["ShadowRoot"] = None
        if text:
            self.children.append(TextNode(text))
            self.children[-1].parent = self

    def __repr__(self) -> str:
        ident = f"#{self.id}" if self.id else ""
        return f"<Element {self.tag}{ident}>"

    @property
    def id(self) -> str:
        return self.attrs.get("id", "")

    @property
    def class_name(self) -> str:
        return self.attrs.get("class", "")

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    def set_attribute(self, name: str, value: str):
        old = self.attrs.get(name)
        self.attrs[name] = value
        self._notify(MutationRecord(type="attributes", target=self, attribute_name=name, old_value=old))

    def remove_attribute(self, name: str):
        if name in self.attrs:
            old = self.attrs.pop(name)
            self._notify(MutationRecord(type="attributes", target=self, attribute_name=name, old_value=old))

    def attach_shadow(self, mode: str = "open") -> "ShadowRoot":
        if self.shadow_root is not None:
            raise ValueError(f"{self!r} ya tiene un shadow root")
        self.shadow_root = ShadowRoot(self, mode)
        return self.shadow_root

    def _start_tag(self) -> str:
        parts = [self.tag]
        for name, value in self.attrs.items():
            if value is None or value == "":
                parts.append(name)
            else:
                parts.append(f'{name}="{html.escape(str(value), quote=True)}"')
        return "<" + " ".join(parts) + ">"

    @property
    def outer_html(self) -> str:
        if self.tag in VOID_ELEMENTS:
            return self._start_tag()
        return f"{self._start_tag()}{self.inner_html}</{self.tag}>"

    @property
    def shadow_html(self) -> str:
        return self.shadow_root.inner_html if self.shadow_root is not None else ""


class ShadowRoot(Container):
    """Fragmento aislado adjunto a un elemento host."""

    def __init__(self, host: Element, mode: str = "open"):
        super().__init__()
        self.host = host
        self.mode = mode

    def __repr__(self) -> str:
        return f"<ShadowRoot host={self.host!r}>"


class Document(Container):
    def __init__(self, url: str = "about:blank", referrer: str = "", user_agent: str = ""):
        super().__init__()
        self.url = url
        self.referrer = referrer
        self.user_agent = user_agent
        self.hidden = False
        root = Element("html")
        root.parent = self
        self.children.append(root)
        for tag in ("head", "body"):
            child = Element(tag)
            child.parent = root
            root.children.append(child)

    @property
    def document_element(self) -> Element:
        return self.element_children()[0]

    def _structural_child(self, tag: str) -> Element:
        for child in self.document_element.element_children():
            if child.tag == tag:
                return child
        child = Element(tag)
        self.document_element.append_child(child)
        return child

    @property
    def head(self) -> Element:
        return self._structural_child("head")

    @property
    def body(self) -> Element:
        return self._structural_child("body")

    @property
    def outer_html(self) -> str:
        return self.inner_html

    def create_element(self, tag: str, attrs: Optional[Dict[str, str]] = None, text: Optional[str] = None) -> Element:
        return Element(tag, attrs, text)


def is_structural_root(element: Element) -> bool:
    """html, head y body (o la raíz del documento) jamás se tocan."""
    if element.tag in STRUCTURAL_TAGS:
        return True
    return isinstance(element.parent, Document)


# ═══════════════════════════════════════════════════════════════════════
# PARSEO (BeautifulSoup)
# ═══════════════════════════════════════════════════════════════════════

_SKIPPED_STRINGS = (Comment, Doctype, Declaration, ProcessingInstruction, CData)


def _convert_children(tag: Tag, target: Container):
    """Copia los hijos de un Tag de bs4 en un contenedor, sin emitir mutaciones."""
    for child in tag.children:
        if isinstance(child, _SKIPPED_STRINGS):
            continue
        if isinstance(child, NavigableString):
            node = TextNode(str(child))
        elif isinstance(child, Tag):
            if (child.name == "template" and child.get("shadowrootmode")
                    and isinstance(target, Element) and target.shadow_root is None):
                shadow = target.attach_shadow(child.get("shadowrootmode"))
                _convert_children(child, shadow)
                continue
            node = Element(child.name, {k: (" ".join(v) if isinstance(v, list) else v)
                                        for k, v in child.attrs.items()})
            _convert_children(child, node)
        else:
            continue
        node.parent = target
        target.children.append(node)


def _soup(markup: str) -> BeautifulSoup:
    return BeautifulSoup(markup, "html.parser", multi_valued_attributes=None)


def parse_fragment(markup: str) -> List[Node]:
    """Nodos sueltos (sin padre) listos para insertarse con append_child()."""
    holder = Element("div")
    _convert_children(_soup(markup), holder)
    nodes = list(holder.children)
    for node in nodes:
        node.parent = None
    return nodes


def parse_html(markup: str, url: str = "about:blank", referrer: str = "", user_agent: str = "") -> Document:
    """
    Construye un Document desde HTML.

    Si el marcado no trae <html>/<head>/<body> se completan; el contenido
    suelto va al body.
    """
    soup = _soup(markup)
    document = Document(url=url, referrer=referrer, user_agent=user_agent)
    html_tag = soup.find("html")
    if html_tag is None:
        _convert_children(soup, document.body)
        return document

    root = document.document_element
    root.attrs = {k: (" ".join(v) if isinstance(v, list) else v) for k, v in html_tag.attrs.items()}
    root.children = []
    _convert_children(html_tag, root)
    tags = [c.tag for c in root.element_children()]
    if "head" not in tags:
        head = Element("head")
        head.parent = root
        root.children.insert(0, head)
    if "body" not in tags:
        body = Element("body")
        body.parent = root
        # lo que no sea head pasa al body
        for child in list(root.children):
            if isinstance(child, Element) and child.tag == "head":
                continue
            root.children.remove(child)
            child.parent = body
            body.children.append(child)
        root.children.append(body)
    return document


DomNode = Union[Element, TextNode]
