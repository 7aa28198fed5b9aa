import logging
import os
from typing import Mapping, Optional

from pydantic import BaseModel

from .supervisor import DEFAULT_TIMEOUT_MS

log = logging.getLogger(__name__)

VERSION = "v0.1.0"
HOST_IP = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

# The dashboard dev server; production deployments set ALLOWED_ORIGINS explicitly.
DEFAULT_ALLOWED_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
ALLOWED_ORIGINS_STR = os.environ.get("ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS)
ALLOWED_ORIGINS = [origin.strip() for origin in ALLOWED_ORIGINS_STR.split(',') if origin.strip()]


class ProbeSettings(BaseModel):
    """How derpprobe is invoked. Built once by the calling layer and handed to the engine."""
    command: str = "derpprobe"
    args_text: str = ""
    derp_map: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    raw_output: bool = False


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _env_timeout(value: Optional[str]) -> int:
    try:
        timeout_ms = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_TIMEOUT_MS
    return timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS


def load_settings(environ: Mapping[str, str] = os.environ) -> ProbeSettings:
    settings = ProbeSettings(
        command=environ.get("DERPPROBE_BIN") or "derpprobe",
        args_text=environ.get("DERPPROBE_ARGS", ""),
        derp_map=environ.get("DERPPROBE_DERP_MAP") or None,
        timeout_ms=_env_timeout(environ.get("DERPPROBE_TIMEOUT_MS")),
        raw_output=_env_flag(environ.get("DERPPROBE_RAW_OUTPUT")),
    )
    log.info(f"Config Loaded: command={settings.command}, args={settings.args_text!r}, "
             f"derp_map={settings.derp_map}, timeout_ms={settings.timeout_ms}, raw_output={settings.raw_output}")
    return settings
