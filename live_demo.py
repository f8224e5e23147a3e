"""
LIVE DEMO — Simulación de un intento de cuestionario
═══════════════════════════════════════════════════════════════
Recorre el flujo completo sin navegador ni servidor HTTP:

    página (HTML) ── extensión inyecta UI en un shadow root
        │
        ├─ DetectionEngine   → detecta, aprende el ID, barre, elimina
        └─ ActivityTracker   → page_load, foco, copia, extensiones
                │  flush (sender en proceso)
                ▼
        EventIngestionService → Metric + Extension (SQLite temporal)
                │
                ▼
        ReportService         → resumen de la pregunta y del intento

El reloj es simulado: cada paso avanza los segundos indicados, así los
tiempos de foco del resumen son deterministas.

Uso:
    python live_demo.py
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import replace
from typing import Dict

from config import get_config
from data.database import get_engine, get_session_factory, init_db
from dom import parse_html, parse_fragment
from event_ingestion import EventIngestionService
from reports import ReportService
from tracker import AttemptContext, create_client

logger = logging.getLogger("cheatdetect.demo")

QUIZ_PAGE = """
<html>
  <head><title>Cuestionario — Fundamentos de Programación</title></head>
  <body>
    <div id="question-41-3" class="que essay">
      <div class="qtext"><p>Explica la diferencia entre un bucle for y un bucle while.</p></div>
      <textarea name="q41:3_answer"></textarea>
    </div>
  </body>
</html>
"""

INJECTED_WIDGET = """
<div id="ext-root">
  <template shadowrootmode="open">
    <div class="panel">
      <button><img src="chrome-extension://kjdhfgqwelrpoaisudmnbvcx/icons/logo.png"> AI Magic</button>
    </div>
  </template>
</div>
<span class="hint"><a href="chrome-extension://kjdhfgqwelrpoaisudmnbvcx/popup.html">?</a></span>
"""


class SimulatedClock:
    """Milisegundos de época que solo avanzan cuando la demo lo pide."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float):
        self.now_ms += int(seconds * 1000)


async def run_demo(workdir: str = None) -> Dict:
    workdir = workdir or tempfile.mkdtemp(prefix="cheatdetect_demo_")
    engine = init_db(get_engine(f"sqlite:///{os.path.join(workdir, 'server.db')}"))
    session_factory = get_session_factory(engine)
    ingestion = EventIngestionService(session_factory)
    reports = ReportService(session_factory)

    async def in_process_sender(url: str, payload: Dict, timeout: float) -> bool:
        context = {k: payload[k] for k in ("session_id", "attemptid", "userid", "quizid", "slot")}
        result = ingestion.process_batch(context, payload["events"])
        return result.success

    document = parse_html(QUIZ_PAGE, url="https://moodle.example/mod/quiz/attempt.php?attempt=41&page=2",
                          user_agent="Mozilla/5.0 (demo)")
    clock = SimulatedClock()

    # el reloj simulado no avanza solo: los bucles periódicos no deben dispararse
    config = get_config()
    config = replace(config, tracker=replace(
        config.tracker,
        flush_interval_seconds=3600,
        extension_check_interval_seconds=3600,
        buffer_path=os.path.join(workdir, "buffer.db"),
        ready_timeout_seconds=1.0,
    ))
    tracker = create_client(
        document,
        AttemptContext(session_id="demo-session", attemptid=41, userid=7, quizid=3, slot=3),
        config=config,
        send=in_process_sender,
        clock=clock,
    )
    detector, lifecycle = tracker.detector, tracker.lifecycle

    learned = []
    detector.on_detected = lambda key, sig, method: logger.info(f"Detectada {sig.name}: {method}")
    detector.on_identity_learned = lambda key, ident: learned.append((key, ident))

    tracker.start()
    await lifecycle.start_detector(detector)

    clock.advance(12)
    for node in parse_fragment(INJECTED_WIDGET):
        document.body.append_child(node)

    clock.advance(8)
    tracker.on_copy("bucle for y un bucle while", document.get_element_by_id("question-41-3")
                    .element_children()[0].element_children()[0])
    tracker.on_visibility_change(False)
    clock.advance(30)
    tracker.on_visibility_change(True)
    clock.advance(20)
    tracker.check_for_new_extensions()
    await tracker.flush()

    clock.advance(10)
    await tracker.unload()
    detected = detector.get_statistics()["detectedExtensionsList"]
    lifecycle.stop()

    return {
        "learned_identities": learned,
        "detector": detected,
        "slot": reports.slot_summary(41, 3),
        "attempt": reports.attempt_summary(41),
    }


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format=get_config().system.log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    print(json.dumps(asyncio.run(run_demo()), indent=2, ensure_ascii=False))
