import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from stakerecon.models import ChunkGap


class GapLog:
    """Writes one JSON record per chunk the chain source could not fetch."""

    def __init__(self, local_path: str = "./gaps") -> None:
        self.local_path = Path(local_path)

    def send(self, network: str, gap: ChunkGap, context: Optional[Dict[str, Any]] = None) -> Path:
        self.local_path.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat(),
            "network": network,
            "from_block": gap.from_block,
            "to_block": gap.to_block,
            "attempts": gap.attempts,
            "error_type": gap.error_type or "Error",
            "error_message": gap.error,
            "context": context or {},
        }
        filename = self.local_path / f"{network.lower()}_{gap.from_block}_{gap.to_block}_{now.strftime('%Y%m%d_%H%M%S_%f')}.json"
        filename.write_text(json.dumps(payload))
        return filename

    def send_all(self, network: str, gaps: Iterable[ChunkGap], context: Optional[Dict[str, Any]] = None) -> List[Path]:
        return [self.send(network, gap, context) for gap in gaps]
