import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from .models.NodeRecord import NodeRecord
from .parsers import to_number

log = logging.getLogger(__name__)

REGION_MAP_TIMEOUT = 5.0  # seconds, for http(s) region maps


def file_uri_to_path(location: str) -> str:
    parsed = urlparse(location)
    path = url2pathname(parsed.path)
    if parsed.netloc and parsed.netloc != "localhost":
        return f"//{parsed.netloc}{path}"
    return path


def parse_region_table(document: Any) -> Dict[str, float]:
    """Build {region code (lowercase): RegionID} from a DERP map document."""
    if not isinstance(document, dict):
        return {}
    regions = document.get("Regions")
    if not isinstance(regions, dict):
        return {}

    table: Dict[str, float] = {}
    for region in regions.values():
        if not isinstance(region, dict):
            continue
        code = region.get("RegionCode")
        code = code.strip().lower() if isinstance(code, str) else ""
        region_id = to_number(region.get("RegionID"))
        if not code or region_id is None:
            continue
        table[code] = region_id
    return table


async def _read_location(location: str) -> str:
    if location.startswith("{"):
        return location
    if location.startswith(("http://", "https://")):
        async with httpx.AsyncClient(timeout=REGION_MAP_TIMEOUT) as client:
            response = await client.get(location)
            response.raise_for_status()
            return response.text
    if location.startswith("file://"):
        location = file_uri_to_path(location)
    return Path(location).read_text(encoding="utf-8")


async def load_region_table(location: Optional[str]) -> Dict[str, float]:
    """
    Load the region ordering table from a DERP map.

    `location` may be inline JSON, an http(s) URL, a file:// URI or a plain path.
    Any read or decode failure yields an empty table.
    """
    if not location or not location.strip():
        return {}
    location = location.strip()

    try:
        content = await _read_location(location)
        return parse_region_table(json.loads(content))
    except (OSError, ValueError, httpx.HTTPError) as e:
        log.debug(f"Could not load region map from {location}: {e}")
        return {}


class RegionOrderResolver:
    def __init__(self, table: Optional[Dict[str, float]] = None):
        self.table = table or {}

    def sort_key(self, node: NodeRecord) -> Optional[float]:
        candidates = [
            (node.name or "").strip().lower(),
            node.id.split("-")[0].strip().lower(),
            (node.region or "").strip().lower(),
        ]
        for code in candidates:
            if code in self.table:
                return self.table[code]
        return None

    def order(self, nodes: List[NodeRecord]) -> List[NodeRecord]:
        def key(node: NodeRecord):
            region_id = self.sort_key(node)
            # unmatched nodes go last, ties broken by name then region
            matched = 0 if region_id is not None else 1
            return (matched, region_id or 0, node.name or "", node.region or "")

        return sorted(nodes, key=key)
