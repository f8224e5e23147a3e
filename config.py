"""
CONFIG.PY — Configuraciones del Sistema CheatDetect
=====================================================
Centraliza TODAS las configuraciones del sistema:
  - DetectorSettings: parámetros del detector de extensiones (lado cliente)
  - TrackerSettings: parámetros del tracker de actividad y del buffer local
  - SystemConfig: parámetros técnicos del servidor (API + base de datos)

Las firmas de detección (qué extensiones se buscan) viven en signatures.py.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, List
from enum import Enum

from dotenv import load_dotenv

__all__ = [
    "DetectorSettings",
    "TrackerSettings",
    "SystemConfig",
    "AppConfig",
    "get_config",
    "reset_config",
]


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


# ═══════════════════════════════════════════════════════════════════════
# DETECTOR — Parámetros de detección (config del host)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class DetectorSettings:
    """
    Configuración consumida por el motor de detección.

    Equivale a los settings que el host inyecta en la página:
    {enableLogging, removeDetectedElements, fileCheckTimeout, shadowScanDelay}.
    """

    enable_logging: bool = True
    remove_detected_elements: bool = True
    file_check_timeout: int = 5000      # ms por fichero sondeado
    shadow_scan_delay: int = 1000       # ms entre escaneos periódicos de respaldo

    @property
    def scan_interval_seconds(self) -> float:
        return self.shadow_scan_delay / 1000.0

    @property
    def file_check_timeout_seconds(self) -> float:
        return self.file_check_timeout / 1000.0

    @classmethod
    def from_env(cls) -> "DetectorSettings":
        return cls(
            enable_logging=_env_bool("CHEATDETECT_ENABLE_LOGGING", True),
            remove_detected_elements=_env_bool("CHEATDETECT_REMOVE_ELEMENTS", True),
            file_check_timeout=int(os.getenv("CHEATDETECT_FILE_CHECK_TIMEOUT_MS", "5000")),
            shadow_scan_delay=int(os.getenv("CHEATDETECT_SHADOW_SCAN_DELAY_MS", "1000")),
        )


# ═══════════════════════════════════════════════════════════════════════
# TRACKER — Buffer local y envío por lotes
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class TrackerSettings:
    """Configuración del tracker de actividad del lado cliente."""

    # Envío
    endpoint: str = "http://localhost:8000/api/cheatdetect/save-data"
    flush_interval_seconds: float = 5.0
    request_timeout_seconds: float = 10.0

    # Revisión de nuevas detecciones de extensiones
    extension_check_interval_seconds: float = 5.0

    # Buffer local (cola append-only)
    buffer_path: str = "cheatdetect_buffer.db"

    # Espera máxima a que el tracker marque el ciclo de vida como listo
    ready_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "TrackerSettings":
        return cls(
            endpoint=os.getenv("CHEATDETECT_ENDPOINT", "http://localhost:8000/api/cheatdetect/save-data"),
            flush_interval_seconds=float(os.getenv("CHEATDETECT_FLUSH_INTERVAL_S", "5")),
            request_timeout_seconds=float(os.getenv("CHEATDETECT_REQUEST_TIMEOUT_S", "10")),
            extension_check_interval_seconds=float(os.getenv("CHEATDETECT_EXTENSION_CHECK_INTERVAL_S", "5")),
            buffer_path=os.getenv("CHEATDETECT_BUFFER_PATH", "cheatdetect_buffer.db"),
            ready_timeout_seconds=float(os.getenv("CHEATDETECT_READY_TIMEOUT_S", "5")),
        )


# ═══════════════════════════════════════════════════════════════════════
# SYSTEM CONFIG — Parámetros técnicos del servidor
# ═══════════════════════════════════════════════════════════════════════

class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class SystemConfig:
    """Configuración técnica del servidor."""

    # Entorno
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    max_events_per_batch: int = 500

    # Base de datos
    database_url: str = "sqlite:///./cheatdetect.db"
    database_echo: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s [%(levelname)s] %(name)s — %(message)s"

    @classmethod
    def from_env(cls) -> "SystemConfig":
        """Carga configuración desde variables de entorno."""
        return cls(
            environment=Environment(os.getenv("ENVIRONMENT", "development")),
            debug=_env_bool("DEBUG", True),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            cors_origins=os.getenv("ALLOWED_ORIGINS", "*").split(","),
            max_events_per_batch=int(os.getenv("MAX_EVENTS_PER_BATCH", "500")),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./cheatdetect.db"),
            database_echo=_env_bool("DATABASE_ECHO", False),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", cls.log_format),
        )


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN GLOBAL
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class AppConfig:
    """Configuración completa de la aplicación."""
    system: SystemConfig = field(default_factory=SystemConfig)
    detector: DetectorSettings = field(default_factory=DetectorSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Carga toda la configuración desde el entorno (y .env si existe)."""
        load_dotenv()
        return cls(
            system=SystemConfig.from_env(),
            detector=DetectorSettings.from_env(),
            tracker=TrackerSettings.from_env(),
        )


# Singleton de configuración
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Obtiene la configuración global (singleton)."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def reset_config() -> None:
    """Resetea la configuración (para tests)."""
    global _config
    _config = None
