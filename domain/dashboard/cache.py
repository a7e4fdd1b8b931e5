"""On-disk copy of the last successful raw fetch, read only when a refresh fails."""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .models import RawBatch

logger = logging.getLogger(__name__)

BATCH_KEYS = ("projects", "ahjs", "utilities", "financiers")


class RawBatchCache:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(self, batch: RawBatch, timestamp: Optional[float] = None) -> bool:
        """Write ``batch``; failures are logged and reported through the return value."""

        payload = {
            "timestamp": time.time() if timestamp is None else timestamp,
            "batch": batch.to_dict(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, default=str), encoding="utf-8")
            tmp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not write raw cache %s: %s", self.path, exc)
            return False
        return True

    def load(self) -> Optional[Tuple[RawBatch, float]]:
        """Return ``(batch, timestamp)`` or ``None`` when the file is missing or unreadable."""

        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable raw cache %s: %s", self.path, exc)
            return None

        if not isinstance(payload, dict) or not isinstance(payload.get("batch"), dict):
            logger.warning("Ignoring malformed raw cache %s", self.path)
            return None

        collections: Dict[str, List[Dict[str, Any]]] = {}
        for key in BATCH_KEYS:
            rows = payload["batch"].get(key) or []
            collections[key] = [row for row in rows if isinstance(row, dict)] if isinstance(rows, list) else []

        try:
            timestamp = float(payload.get("timestamp") or 0.0)
        except (TypeError, ValueError):
            timestamp = 0.0
        return RawBatch.from_lists(**collections), timestamp

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed cached dashboard data at %s", self.path)
        return True


__all__ = ["RawBatchCache"]
