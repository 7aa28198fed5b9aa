from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, Any

from ..engine import ProbeEngine
from .probe import get_engine

router = APIRouter()


@router.get("/nodes/{node_id}/history", response_model=Dict[str, Any])
async def get_node_history(node_id: str, engine: ProbeEngine = Depends(get_engine)):
    history = engine.store.history.get(node_id)
    if history is None:
        raise HTTPException(status_code=404, detail=f"Node '{node_id}' has no probe history")

    return {
        "node_id": node_id,
        "loss_pct": history.loss_pct(),
        "avg_latency_ms": history.average_latency(),
        "samples": history.as_list(),  # oldest first
    }
