from sqlmodel import SQLModel, Field
from typing import Optional, List, Any

from .NodeRecord import NodeRecord


class ProbeSummary(SQLModel):
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    down: int = 0
    unknown: int = 0
    avg_latency_ms: Optional[int] = None


class ProbeCycleResult(SQLModel):
    """
    Everything one derpprobe invocation produced.
    ok=False maps to a non-2xx status at the HTTP boundary.
    """
    ok: bool
    checked_at: str
    duration_ms: int
    summary: ProbeSummary = Field(default_factory=ProbeSummary)
    nodes: List[NodeRecord] = Field(default_factory=list)
    stderr: Optional[str] = Field(default=None, description="Captured diagnostic stream.")
    error: Optional[str] = Field(default=None, description="Single human-readable failure reason.")
    raw: Optional[Any] = Field(default=None, description="Decoded stdout document, when captured.")
