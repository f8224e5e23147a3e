"""
Test de integración: recorrido completo de la demo.

Página → extensión inyectada en un shadow root → detector (aprende el ID
y barre) → tracker (foco, copia, extensiones) → ingesta → resúmenes.
El reloj es simulado, así que los tiempos son exactos.
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from live_demo import run_demo


class TestFullAttempt:

    def test_recorrido_completo_de_un_intento(self, tmp_path):
        result = asyncio.run(run_demo(str(tmp_path)))

        assert result["learned_identities"] == [("crowdly", "kjdhfgqwelrpoaisudmnbvcx")]
        assert result["detector"] == ["crowdly"]

        slot = result["slot"]
        assert slot["time_spent"] == 80
        assert slot["time_percentage"] == 100.0
        assert slot["copy_count"] == 1
        assert slot["focus_loss_count"] == 1
        assert len(slot["extensions_detected"]) == 2
        assert {e["extension_key"] for e in slot["extensions_detected"]} == {"crowdly"}
        assert slot["cheat_detected"] is True

        attempt = result["attempt"]
        assert attempt["slot_count"] == 1
        assert attempt["total_time"] == 80
        assert attempt["total_extensions"] == 2
