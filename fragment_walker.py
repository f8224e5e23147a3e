"""
FRAGMENT WALKER — Descubrimiento de shadow roots
=================================================
Las extensiones modernas esconden su UI en shadow roots: fragmentos
aislados que no aparecen al recorrer el documento ni disparan los
observers del documento.

El walker recorre con una cola explícita (sin recursión) cualquier
subárbol, y cada shadow root que encuentra por primera vez:
  1. se registra UNA vez (pertenencia por identidad, no por igualdad),
  2. recibe su propio MutationObserver,
  3. se entrega al callback on_fragment para escanearlo al momento.

Los shadow roots anidados entran en la misma cola.
"""

import logging
from collections import deque
from typing import Callable, Dict, List, Tuple

from dom import Container, Element, MutationObserver, ShadowRoot

logger = logging.getLogger("cheatdetect.fragments")


class FragmentWalker:
    def __init__(self, on_mutation: Callable, on_fragment: Callable[[ShadowRoot], None]):
        self._on_mutation = on_mutation
        self._on_fragment = on_fragment
        # id(fragment) → (fragment, observer); guardar el fragmento impide que el id se recicle
        self._watched: Dict[int, Tuple[ShadowRoot, MutationObserver]] = {}

    def __contains__(self, fragment: ShadowRoot) -> bool:
        return id(fragment) in self._watched

    def __len__(self) -> int:
        return len(self._watched)

    @property
    def fragments(self) -> List[ShadowRoot]:
        return [fragment for fragment, _ in self._watched.values()]

    def discover(self, root: Container) -> List[ShadowRoot]:
        """
        Busca fragmentos nuevos bajo `root` (incluido el propio root si
        es un elemento host). Devuelve los registrados en esta llamada.
        """
        found: List[ShadowRoot] = []
        queue = deque([root])
        while queue:
            container = queue.popleft()
            hosts = list(container.iter_descendants())
            if isinstance(container, Element):
                hosts.insert(0, container)
            for element in hosts:
                fragment = element.shadow_root
                if fragment is None or fragment in self:
                    continue
                self._watch(fragment)
                found.append(fragment)
                queue.append(fragment)
        for fragment in found:
            try:
                self._on_fragment(fragment)
            except Exception as e:
                logger.warning(f"Fallo escaneando {fragment!r}: {e}")
        return found

    def _watch(self, fragment: ShadowRoot):
        observer = MutationObserver(self._on_mutation)
        observer.observe(fragment, child_list=True, attributes=True, subtree=True)
        self._watched[id(fragment)] = (fragment, observer)
        logger.debug(f"Observando {fragment!r}")

    def disconnect_all(self):
        for _, observer in self._watched.values():
            observer.disconnect()
        self._watched.clear()
