"""
LIFECYCLE — Coordinación explícita tracker ↔ detector
======================================================
El detector no debe arrancar antes de que el tracker tenga su buffer
listo (si no, sus primeras detecciones no tendrían dónde registrarse).
En lugar de una bandera global consultada en bucle, ambos reciben el
mismo MonitoringLifecycle:

    tracker  → lifecycle.mark_ready()
    detector ← await lifecycle.start_detector(engine)   # espera máx. 5 s

Si el tracker no marca listo a tiempo, el detector arranca igualmente
(warning en el log).
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger("cheatdetect.lifecycle")


class MonitoringLifecycle:
    def __init__(self, ready_timeout_seconds: float = 5.0):
        self.ready_timeout_seconds = ready_timeout_seconds
        self._ready = asyncio.Event()
        self.detector = None

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self):
        if not self._ready.is_set():
            self._ready.set()
            logger.debug("Tracking listo")

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """True si se marcó listo dentro del plazo."""
        timeout = self.ready_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def start_detector(self, engine) -> bool:
        """
        Arranca `engine` cuando el tracking está listo.

        Solo se posee un detector: si ya hay uno, se devuelve False sin
        crear otro arranque.
        """
        if self.detector is not None:
            logger.info("El detector ya estaba creado")
            return False
        if not await self.wait_ready():
            logger.warning("Tiempo de espera agotado: arranque forzado sin tracking")
        if self.detector is not None:
            return False
        self.detector = engine
        return engine.start()

    def stop(self):
        if self.detector is not None:
            self.detector.stop()
            self.detector = None
