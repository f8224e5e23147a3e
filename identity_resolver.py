"""
IDENTITY RESOLVER — IDs de instalación de extensiones
======================================================
Cada instalación de una extensión recibe un ID propio (Firefox lo
genera al azar por perfil), así que los IDs estáticos de una firma no
bastan. Cuando el detector encuentra una coincidencia heurística, el
marcado de esa extensión suele revelar su ID real vía una URL
`chrome-extension://<id>/...` o `moz-extension://<id>/...`.

Este módulo:
  1. Extrae ese ID de texto HTML arbitrario (EXTENSION_URL_REGEX).
  2. Mantiene por firma el conjunto de IDs confirmados
     (estáticos ∪ aprendidos). El conjunto SOLO crece durante la sesión.
"""

import logging
from typing import Dict, List, Optional, Set

from signatures import EXTENSION_URL_REGEX, SignatureRegistry

logger = logging.getLogger("cheatdetect.identity")


def extract_identity(markup: str) -> Optional[str]:
    """Primer ID `protocol://id` presente en el marcado, o None."""
    if not markup:
        return None
    match = EXTENSION_URL_REGEX.search(markup)
    return match.group(2) if match else None


def extract_all_identities(markup: str) -> List[str]:
    """Todos los IDs distintos, en orden de aparición."""
    if not markup:
        return []
    seen: List[str] = []
    for match in EXTENSION_URL_REGEX.finditer(markup):
        ident = match.group(2)
        if ident not in seen:
            seen.append(ident)
    return seen


class IdentityResolver:
    """
    Registro en memoria de identidades por firma.

    Un resolver vive lo que vive el detector que lo posee: reiniciar el
    detector (instancia nueva) empieza con solo los IDs estáticos.
    """

    def __init__(self, registry: SignatureRegistry):
        self.registry = registry
        self._learned: Dict[str, Set[str]] = {key: set() for key in registry.keys()}

    def known_ids(self, key: str) -> frozenset:
        signature = self.registry.get(key)
        static = signature.known_ids if signature is not None else frozenset()
        return static | frozenset(self._learned.get(key, ()))

    def learned_ids(self, key: str) -> frozenset:
        return frozenset(self._learned.get(key, ()))

    def is_known(self, key: str, ident: str) -> bool:
        return ident in self.known_ids(key)

    def find_known_identity(self, key: str, markup: str) -> Optional[str]:
        """Devuelve el primer ID del marcado que ya está confirmado para la firma."""
        known = self.known_ids(key)
        if not known:
            return None
        for ident in extract_all_identities(markup):
            if ident in known:
                return ident
        return None

    def learn(self, key: str, ident: str) -> bool:
        """
        Añade un ID a la firma. True si era nuevo.

        Unión monotónica: nunca se elimina nada.
        """
        if not ident:
            return False
        if self.is_known(key, ident):
            return False
        self._learned.setdefault(key, set()).add(ident)
        logger.info(f"Nueva identidad aprendida para {key}: {ident}")
        return True

    def snapshot(self) -> Dict[str, List[str]]:
        return {key: sorted(self.known_ids(key)) for key in self.registry.keys()}
