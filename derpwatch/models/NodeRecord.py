from sqlmodel import SQLModel, Field
from typing import Optional, Literal, Dict, Any

ProbeStatus = Literal["healthy", "degraded", "down", "unknown"]
PROBE_STATUSES = ("healthy", "degraded", "down", "unknown")


class NodeRecord(SQLModel):
    """
    Health record for one DERP relay seen during a probe cycle.
    latency_ms is a raw sample for structured-output nodes and a rolling
    average of calibrated delay for log-parsed nodes.
    """
    id: str = Field(description="'<shortRegionCode>-<cloudSubregion>' or the structured id.")
    name: Optional[str] = Field(default=None, description="Display name, usually the short region code.")
    region: Optional[str] = Field(default=None, description="Cloud subregion or region name.")
    latency_ms: Optional[float] = Field(default=None)
    loss_pct: Optional[int] = Field(default=None, description="Share of recent cycles that failed, 0-100.")
    status: ProbeStatus = "unknown"
    message: Optional[str] = Field(default=None, description="Failure diagnostics joined with ' | '.")
    checked_at: str
    raw: Optional[Dict[str, Any]] = Field(default=None, description="Source object from structured output.")
