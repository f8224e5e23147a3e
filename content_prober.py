"""
CONTENT PROBER — Sondeo de recursos propios de una extensión
=============================================================
Dada la base `chrome-extension://<id>` de un candidato, pide sus
ficheros (manifest.json, hojas de estilo...) para confirmar que la
extensión existe y, opcionalmente, que el contenido es el esperado.

Reglas:
  - Una petición por fichero, con timeout acotado.
  - Dedup por clave `base:fichero`: si la misma petición ya está en
    vuelo, la segunda resuelve {skipped: True} sin red.
  - Sin motivos de contenido, que el fichero exista basta.
    Con motivos, al menos uno debe ser subcadena literal del texto.
  - NUNCA lanza: red caída, timeout o status != 2xx → success False.

El cliente HTTP es aiohttp; el fetcher es inyectable para tests.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

import aiohttp

from signatures import EXTENSION_URL_REGEX

logger = logging.getLogger("cheatdetect.prober")

ACCESSIBILITY_TIMEOUT_SECONDS = 3.0


@dataclass
class FetchResult:
    success: bool
    status: Optional[int] = None
    text: Optional[str] = None
    error: Optional[str] = None


Fetcher = Callable[[str, float], Awaitable[FetchResult]]


async def fetch_with_timeout(url: str, timeout: float = 5.0) -> FetchResult:
    """GET con timeout total. Los fallos se devuelven, no se lanzan."""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as r:
                if r.status < 200 or r.status >= 300:
                    return FetchResult(success=False, status=r.status, error=f"HTTP {r.status}")
                text = await r.text(errors="ignore")
                return FetchResult(success=True, status=r.status, text=text)
    except asyncio.TimeoutError:
        return FetchResult(success=False, error="Timeout")
    except Exception as e:
        return FetchResult(success=False, error=str(e) or e.__class__.__name__)


def extract_extension_base(content: str) -> Optional[str]:
    """'chrome-extension://abc/x.js' → 'chrome-extension://abc'."""
    if not content:
        return None
    match = EXTENSION_URL_REGEX.search(content)
    return match.group(0) if match else None


class ContentProber:
    """Sondeo deduplicado de ficheros de extensión."""

    def __init__(self, fetch: Optional[Fetcher] = None, timeout_seconds: float = 5.0,
                 enable_logging: bool = True):
        self._fetch = fetch or fetch_with_timeout
        self.timeout_seconds = timeout_seconds
        self.enable_logging = enable_logging
        self._active_requests: Set[str] = set()

    @property
    def active_requests(self) -> frozenset:
        return frozenset(self._active_requests)

    async def probe_files(self, base_path: str, files: Dict[str, Sequence[str]]) -> Dict:
        if self.enable_logging:
            logger.info(f"Sondeando {len(files)} ficheros en {base_path}")
        try:
            results = await asyncio.gather(*[
                self._probe_single(base_path, name, patterns) for name, patterns in files.items()
            ])
        except Exception as e:
            logger.warning(f"Fallo inesperado sondeando {base_path}: {e}")
            results = [{"file": name, "success": False, "detected": False, "error": str(e)}
                       for name in files]
        return self._aggregate(list(results))

    async def is_accessible(self, base_path: str) -> bool:
        result = await self._fetch(f"{base_path}/manifest.json", ACCESSIBILITY_TIMEOUT_SECONDS)
        return result.success

    async def _probe_single(self, base_path: str, file_name: str, patterns: Sequence[str]) -> Dict:
        request_id = f"{base_path}:{file_name}"
        if request_id in self._active_requests:
            return {"file": file_name, "skipped": True, "success": False, "detected": False}

        self._active_requests.add(request_id)
        try:
            result = await self._fetch(f"{base_path}/{file_name}", self.timeout_seconds)
        except Exception as e:
            result = FetchResult(success=False, error=str(e))
        finally:
            self._active_requests.discard(request_id)

        if not result.success:
            return {"file": file_name, "success": False, "detected": False, "error": result.error}

        if not patterns:
            return {"file": file_name, "success": True, "detected": True, "reason": "El fichero existe"}

        content = result.text or ""
        detected = any(pattern in content for pattern in patterns)
        return {
            "file": file_name,
            "success": True,
            "detected": detected,
            "reason": "Validación de contenido correcta" if detected else "Validación de contenido fallida",
            "contentLength": len(content),
        }

    def _aggregate(self, results: List[Dict]) -> Dict:
        checked = [r for r in results if not r.get("skipped")]
        successful = [r for r in checked if r["success"]]
        detected = [r for r in checked if r["detected"]]
        failed = [r for r in checked if not r["success"]]

        if self.enable_logging:
            if detected:
                logger.info(f"Ficheros detectados: {', '.join(r['file'] for r in detected)}")
            if failed:
                logger.warning(f"Sondeos fallidos: {', '.join(r['file'] for r in failed)}")

        return {
            "success": len(successful) > 0,
            "totalFiles": len(results),
            "successfulChecks": len(successful),
            "detectedFiles": len(detected),
            "failedChecks": len(failed),
            "detected": len(detected) > 0,
            "results": results,
            "evidence": [r["file"] for r in detected],
        }

    def cleanup(self):
        self._active_requests.clear()
