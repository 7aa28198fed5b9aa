import logging
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..config import VERSION, load_settings
from ..engine import ProbeEngine

log = logging.getLogger(__name__)

router = APIRouter()

_engine = None


async def get_engine() -> ProbeEngine:
    """Process-wide engine; its smoothing state lives as long as the server."""
    global _engine
    if _engine is None:
        _engine = ProbeEngine(load_settings())
    return _engine


@router.get("/version")
def get_version():
    """Get the current version of the API"""
    return {"version": VERSION}


@router.get("/probe")
async def run_probe(engine: ProbeEngine = Depends(get_engine)):
    """Run derpprobe once and return per-node health. 503 when the cycle is not ok."""
    result = await engine.run_cycle()
    return JSONResponse(
        content=result.model_dump(mode="json", exclude_none=True),
        status_code=200 if result.ok else 503,
        headers={"Cache-Control": "no-store, max-age=0"},
    )
