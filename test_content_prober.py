"""
Tests del sondeo de ficheros de extensión.

El fetcher es inyectable: aquí se sustituye por uno en memoria que
simula una extensión instalada, una caída de red o una petición lenta.
Nunca se toca la red.
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from content_prober import ContentProber, FetchResult, extract_extension_base

BASE = "chrome-extension://abcdefghijklmnop"


def fake_fetcher(files):
    """files: {url: texto}. Lo que no está responde 404."""
    calls = []

    async def fetch(url, timeout):
        calls.append(url)
        if url in files:
            return FetchResult(success=True, status=200, text=files[url])
        return FetchResult(success=False, status=404, error="HTTP 404")

    fetch.calls = calls
    return fetch


async def unreachable(url, timeout):
    return FetchResult(success=False, error="net::ERR_FAILED")


class TestContentProber:

    def test_extension_inaccesible_no_detecta(self):
        prober = ContentProber(fetch=unreachable)
        result = asyncio.run(prober.probe_files(BASE, {"manifest.json": ()}))
        assert result["success"] is False
        assert result["detected"] is False
        assert result["totalFiles"] == 1
        assert result["detectedFiles"] == 0
        assert result["failedChecks"] == 1
        assert result["evidence"] == []

    def test_fichero_sin_motivos_basta_con_existir(self):
        fetch = fake_fetcher({f"{BASE}/manifest.json": "{}"})
        result = asyncio.run(ContentProber(fetch=fetch).probe_files(BASE, {"manifest.json": ()}))
        assert result["success"] is True
        assert result["detected"] is True
        assert result["evidence"] == ["manifest.json"]
        assert fetch.calls == [f"{BASE}/manifest.json"]

    def test_motivos_de_contenido_son_subcadena_literal(self):
        fetch = fake_fetcher({
            f"{BASE}/manifest.json": '{"name": "Crowdly", "version": "2.1"}',
            f"{BASE}/src/styles.css": "body { color: red }",
        })
        files = {
            "manifest.json": ('"name"', '"version"'),
            "src/styles.css": ("#page-question-preview",),
        }
        result = asyncio.run(ContentProber(fetch=fetch).probe_files(BASE, files))
        assert result["successfulChecks"] == 2
        assert result["detectedFiles"] == 1
        assert result["evidence"] == ["manifest.json"]
        by_file = {r["file"]: r for r in result["results"]}
        assert by_file["src/styles.css"]["reason"] == "Validación de contenido fallida"

    def test_peticion_en_vuelo_duplicada_se_omite(self):
        release = None
        started = []

        async def slow(url, timeout):
            started.append(url)
            await release.wait()
            return FetchResult(success=True, status=200, text="{}")

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            prober = ContentProber(fetch=slow)
            first = asyncio.ensure_future(prober.probe_files(BASE, {"manifest.json": ()}))
            while not started:
                await asyncio.sleep(0)
            assert f"{BASE}:manifest.json" in prober.active_requests
            second = await prober.probe_files(BASE, {"manifest.json": ()})
            release.set()
            return await first, second, prober

        first, second, prober = asyncio.run(scenario())
        assert first["detected"] is True
        assert second["results"][0]["skipped"] is True
        assert second["detected"] is False
        assert second["totalFiles"] == 1
        assert len(started) == 1
        assert prober.active_requests == frozenset()

    def test_fetcher_que_lanza_no_propaga(self):
        async def broken(url, timeout):
            raise RuntimeError("boom")

        result = asyncio.run(ContentProber(fetch=broken).probe_files(BASE, {"a.js": ()}))
        assert result["success"] is False
        assert result["results"][0]["error"] == "boom"

    def test_accesibilidad_usa_el_manifest(self):
        fetch = fake_fetcher({f"{BASE}/manifest.json": "{}"})
        prober = ContentProber(fetch=fetch)
        assert asyncio.run(prober.is_accessible(BASE)) is True
        assert asyncio.run(prober.is_accessible("chrome-extension://otro")) is False

    def test_extrae_base_de_la_url(self):
        assert extract_extension_base("url(chrome-extension://abc/x.png)") == "chrome-extension://abc"
        assert extract_extension_base("https://moodle.example") is None
        assert extract_extension_base("") is None
