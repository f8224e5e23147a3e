"""
Tests del detector de extensiones.

Cada test es una situación que se da en una página real de cuestionario:
una extensión que inyecta UI, que la esconde en un shadow root, que
revela su ID de instalación en una URL, o un nodo de la propia página
que NO debe tocarse.

Convención: test_[situación]_[espera_qué]
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import DetectorSettings
from detection_engine import DetectionEngine
from dom import Element, MutationObserver, parse_fragment, parse_html
from fragment_walker import FragmentWalker
from identity_resolver import IdentityResolver, extract_all_identities, extract_identity
from signatures import CROWDLY, DetectionSignature, SignatureRegistry

EXT_ID = "abcdefghijklmnop"


@pytest.fixture
def ext1_registry():
    """Una firma genérica: solo se reconoce por la subcadena 'crowd' en class."""
    return SignatureRegistry({
        "ext1": DetectionSignature(key="ext1", name="Extensión Uno", class_patterns=("crowd",)),
    })


@pytest.fixture
def callbacks():
    calls = {"detected": [], "learned": []}
    return calls


def make_engine(document, registry=None, callbacks=None, **settings):
    callbacks = callbacks if callbacks is not None else {"detected": [], "learned": []}
    return DetectionEngine(
        document,
        registry=registry,
        settings=DetectorSettings(**settings),
        on_detected=lambda key, sig, method: callbacks["detected"].append((key, method)),
        on_identity_learned=lambda key, ident: callbacks["learned"].append((key, ident)),
    )


# ──────────────────────────────────────────────
# MODELO DE DOCUMENTO
# ──────────────────────────────────────────────

class TestDocumentModel:

    def test_parse_html_completa_estructura(self):
        doc = parse_html("<div id='a'><p>hola</p></div>")
        assert doc.document_element.tag == "html"
        assert doc.body.get_element_by_id("a") is not None
        assert doc.head.tag == "head"

    def test_template_declarativo_crea_shadow_root(self):
        doc = parse_html("""
            <div id="host"><template shadowrootmode="open"><span class="inner">x</span></template></div>
        """)
        host = doc.get_element_by_id("host")
        assert host.shadow_root is not None
        assert host.shadow_root.mode == "open"
        assert [e.class_name for e in host.shadow_root.iter_descendants()] == ["inner"]
        # el contenido aislado no aparece al recorrer el documento ni en outerHTML
        assert all(e.class_name != "inner" for e in doc.iter_descendants())
        assert "inner" not in host.outer_html
        assert "inner" in host.shadow_html

    def test_mutaciones_de_shadow_root_no_llegan_al_observer_del_documento(self):
        doc = parse_html("<div id='host'></div>")
        received = []
        MutationObserver(lambda records, obs: received.extend(records)).observe(doc)
        shadow = doc.get_element_by_id("host").attach_shadow()
        shadow.append_child(Element("span"))
        assert received == []

        doc.body.append_child(Element("p"))
        assert len(received) == 1
        assert received[0].type == "childList"

    def test_cambio_de_atributo_notifica(self):
        doc = parse_html("<div id='x'></div>")
        received = []
        MutationObserver(lambda records, obs: received.extend(records)).observe(doc)
        doc.get_element_by_id("x").set_attribute("class", "nuevo")
        assert received[0].type == "attributes"
        assert received[0].attribute_name == "class"

    def test_elemento_de_host_desconectado_no_esta_conectado(self):
        doc = parse_html("<div id='host'></div>")
        host = doc.get_element_by_id("host")
        inner = host.attach_shadow().append_child(Element("span"))
        assert inner.is_connected
        host.remove()
        assert not inner.is_connected


# ──────────────────────────────────────────────
# IDENTIDADES
# ──────────────────────────────────────────────

class TestIdentityResolver:

    def test_extrae_id_de_chrome_y_firefox(self):
        assert extract_identity('<img src="chrome-extension://abc123/x.png">') == "abc123"
        assert extract_identity('<link href="moz-extension://9f1e-77aa/s.css">') == "9f1e-77aa"
        assert extract_identity("<p>sin extensión</p>") is None
        assert extract_identity("") is None

    def test_extrae_todos_sin_repetir(self):
        markup = "chrome-extension://aaa/1 chrome-extension://bbb/2 chrome-extension://aaa/3"
        assert extract_all_identities(markup) == ["aaa", "bbb"]

    def test_ids_estaticos_son_conocidos(self):
        resolver = IdentityResolver(SignatureRegistry())
        assert "idipjdgkafkkbklacjonnhkammdpigol" in resolver.known_ids("crowdly")

    def test_identidades_aprendidas_solo_crecen(self):
        resolver = IdentityResolver(SignatureRegistry())
        before = resolver.known_ids("crowdly")
        assert resolver.learn("crowdly", "nuevoid") is True
        assert resolver.learn("crowdly", "nuevoid") is False
        after = resolver.known_ids("crowdly")
        assert before < after
        assert resolver.find_known_identity("crowdly", "chrome-extension://nuevoid/a.js") == "nuevoid"


# ──────────────────────────────────────────────
# FRAGMENTOS
# ──────────────────────────────────────────────

class TestFragmentWalker:

    def test_descubre_fragmentos_anidados_una_sola_vez(self):
        doc = parse_html("""
            <div id="outer"><template shadowrootmode="open">
                <div id="inner"><template shadowrootmode="open"><b>deep</b></template></div>
            </template></div>
        """)
        scanned = []
        walker = FragmentWalker(lambda records, obs: None, scanned.append)
        found = walker.discover(doc)
        assert len(found) == 2
        assert len(walker) == 2
        assert len(scanned) == 2
        assert walker.discover(doc) == []
        assert len(scanned) == 2

    def test_fragmento_vigilado_recibe_mutaciones(self):
        doc = parse_html("<div id='host'></div>")
        shadow = doc.get_element_by_id("host").attach_shadow()
        received = []
        walker = FragmentWalker(lambda records, obs: received.extend(records), lambda f: None)
        walker.discover(doc)
        shadow.append_child(Element("i"))
        assert len(received) == 1
        walker.disconnect_all()
        shadow.append_child(Element("i"))
        assert len(received) == 1


# ──────────────────────────────────────────────
# MOTOR DE DETECCIÓN
# ──────────────────────────────────────────────

class TestDetectionEngine:

    def test_coincidencia_por_clase_elimina_y_notifica(self, ext1_registry, callbacks):
        doc = parse_html("<div id='main'><p>Pregunta</p></div><div class='crowd-panel'>x</div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        assert callbacks["detected"] == [("ext1", "Clase encontrada: crowd")]
        assert not any("crowd" in e.class_name for e in doc.iter_descendants())
        assert doc.get_element_by_id("main") is not None

    def test_barrido_tras_aprender_identidad_un_callback_dos_registros(self, ext1_registry, callbacks):
        """Un acierto heurístico revela el ID; el barrido recoge el hermano que no coincidía."""
        doc = parse_html(f"""
            <div id="main"><p>Pregunta</p></div>
            <div class="crowd-panel"><img src="chrome-extension://{EXT_ID}/icon.png"></div>
            <section><a href="chrome-extension://{EXT_ID}/popup.html">abrir</a></section>
        """)
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()

        assert len(callbacks["detected"]) == 1
        assert callbacks["learned"] == [("ext1", EXT_ID)]
        records = engine.metrics.records("ext1")
        assert len(records) == 2
        assert records[1].dom.startswith("<a ")
        assert EXT_ID in engine.resolver.known_ids("ext1")
        assert doc.get_element_by_id("main") is not None
        assert "chrome-extension://" not in doc.body.outer_html

    def test_estructura_de_la_pagina_nunca_se_toca(self, ext1_registry, callbacks):
        doc = parse_html("<html class='crowd'><head></head><body class='crowd-theme'><p>ok</p></body></html>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        assert callbacks["detected"] == []
        assert doc.body.class_name == "crowd-theme"
        assert doc.body.element_children()[0].tag == "p"

    def test_id_estatico_de_crowdly_es_autoritativo(self, callbacks):
        doc = parse_html("""
            <div id="wrap"><span data-src="chrome-extension://idipjdgkafkkbklacjonnhkammdpigol/x.js">x</span></div>
        """)
        engine = make_engine(doc, None, callbacks)
        engine.start()
        assert len(callbacks["detected"]) == 1
        key, method = callbacks["detected"][0]
        assert key == "crowdly"
        assert method.startswith("Extensión de navegador encontrada por su ID")
        # el ancestro genérico no es el portador
        assert doc.get_element_by_id("wrap") is not None
        assert engine.metrics.records("crowdly")[0].dom.startswith("<span")

    def test_palabra_clave_solo_marca_el_portador_mas_interno(self, callbacks):
        doc = parse_html("<div id='wrap'><p>Pulsa AI Magic</p></div>")
        engine = make_engine(doc, None, callbacks, remove_detected_elements=False)
        engine.start()
        records = engine.metrics.records("crowdly")
        assert len(records) == 1
        assert records[0].dom.startswith("<p>")
        assert records[0].detection == "Palabra clave encontrada: AI Magic"

    def test_sin_eliminacion_cada_elemento_se_registra_una_vez(self, ext1_registry, callbacks):
        doc = parse_html("<div class='crowd-box'>x</div>")
        engine = make_engine(doc, ext1_registry, callbacks, remove_detected_elements=False)
        engine.start()
        engine.scan_all()
        engine.scan_all()
        assert len(engine.metrics.records("ext1")) == 1
        assert doc.body.element_children()[0].class_name == "crowd-box"

    def test_nodo_insertado_despues_se_detecta_por_observer(self, ext1_registry, callbacks):
        doc = parse_html("<div id='main'></div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        assert callbacks["detected"] == []
        for node in parse_fragment("<aside><div class='crowdly-widget'>hola</div></aside>"):
            doc.body.append_child(node)
        assert len(callbacks["detected"]) == 1
        assert len(engine.metrics.records("ext1")) == 1

    def test_cambio_de_clase_se_detecta(self, ext1_registry, callbacks):
        doc = parse_html("<div id='plain'>x</div>")
        engine = make_engine(doc, ext1_registry, callbacks, remove_detected_elements=False)
        engine.start()
        doc.get_element_by_id("plain").set_attribute("class", "crowd-overlay")
        assert len(callbacks["detected"]) == 1

    def test_ui_dentro_de_shadow_root_se_detecta(self, callbacks):
        doc = parse_html("""
            <div id="host"><template shadowrootmode="open"><button>AI Magic</button></template></div>
        """)
        engine = make_engine(doc, None, callbacks)
        engine.start()
        assert len(callbacks["detected"]) == 1
        assert len(engine.fragments) == 1

    def test_insercion_en_shadow_root_vigilado_se_detecta(self, ext1_registry, callbacks):
        doc = parse_html("<div id='host'></div>")
        shadow = doc.get_element_by_id("host").attach_shadow()
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        assert len(engine.fragments) == 1
        shadow.append_child(Element("div", {"class": "crowd-bubble"}))
        assert len(callbacks["detected"]) == 1

    def test_notificacion_solo_la_primera_vez_por_firma(self, ext1_registry, callbacks):
        doc = parse_html("<div class='crowd-a'>1</div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        doc.body.append_child(Element("div", {"class": "crowd-b"}))
        assert len(callbacks["detected"]) == 1
        assert len(engine.metrics.records("ext1")) == 2

    def test_reset_permite_volver_a_notificar_y_conserva_identidades(self, ext1_registry, callbacks):
        doc = parse_html(f"<div class='crowd-a'><img src='chrome-extension://{EXT_ID}/i.png'></div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        engine.reset()
        doc.body.append_child(Element("div", {"class": "crowd-b"}))
        assert len(callbacks["detected"]) == 2
        assert EXT_ID in engine.resolver.known_ids("ext1")

    def test_estadisticas_separan_identidades_aprendidas(self, ext1_registry, callbacks):
        doc = parse_html(f"<div class='crowd-a'><img src='chrome-extension://{EXT_ID}/i.png'></div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        stats = engine.get_statistics()
        assert stats["learnedIdentities"] == {"ext1": [EXT_ID]}
        assert stats["knownIdentities"] == {"ext1": [EXT_ID]}
        engine.stop()

    def test_start_es_idempotente_y_stop_desconecta(self, ext1_registry, callbacks):
        doc = parse_html("<div id='main'></div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        assert engine.start() is True
        assert engine.start() is False
        engine.stop()
        assert engine.is_running is False
        doc.body.append_child(Element("div", {"class": "crowd-late"}))
        assert callbacks["detected"] == []

    def test_export_y_estadisticas(self, ext1_registry, callbacks):
        doc = parse_html("<div class='crowd-a'>1</div>")
        engine = make_engine(doc, ext1_registry, callbacks)
        engine.start()
        export = engine.export_metrics()
        assert "timestamp" in export
        detected = export["extensionDetection"]["ext1"]
        assert detected["name"] == "Extensión Uno"
        assert detected["detected"][0]["extensionKey"] == "ext1"
        assert detected["detected"][0]["uid"]
        stats = engine.get_statistics()
        assert stats["totalDetections"] == 1
        assert stats["detectedExtensionsList"] == ["ext1"]
        assert stats["lastDetection"]["extension"] == "ext1"

    def test_escaneo_periodico_encuentra_fragmentos_sin_mutacion(self, ext1_registry, callbacks):
        """attach_shadow no genera mutación: solo el escaneo de respaldo lo ve."""
        doc = parse_html("<div id='host'></div>")

        async def scenario():
            engine = make_engine(doc, ext1_registry, callbacks, shadow_scan_delay=10)
            engine.start()
            await asyncio.sleep(0)
            late_host = Element("div", {"id": "late"})
            doc.body.append_child(late_host)
            late_host.attach_shadow().append_child(Element("div", {"class": "crowd-hidden"}))
            assert callbacks["detected"] == []
            await asyncio.sleep(0.1)
            engine.stop()

        asyncio.run(scenario())
        assert len(callbacks["detected"]) == 1

    def test_firmas_por_defecto(self):
        registry = SignatureRegistry()
        assert registry.keys() == ["crowdly"]
        assert registry.get("crowdly") is CROWDLY
        assert CROWDLY.files["manifest.json"] == ('"name"', '"version"')
