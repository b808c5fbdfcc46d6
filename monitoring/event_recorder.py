import json
import logging
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional

from orchestration.events import TradingEvent


logger = logging.getLogger(__name__)


class EventRecorder:
    """Appends every trading event to a JSONL audit log and keeps a short in-memory tail."""

    def __init__(self, log_path: Optional[str] = None, keep_recent: int = 200):
        self.log_path = Path(log_path) if log_path else None
        self.recent: Deque[Dict] = deque(maxlen=keep_recent)
        self.counts: Dict[str, int] = {}

    def record(self, event: TradingEvent) -> None:
        payload = event.to_dict()
        self.recent.append(payload)
        self.counts[event.name] = self.counts.get(event.name, 0) + 1
        if self.log_path is not None:
            self._write_entry(payload)

    def recent_events(self, name: Optional[str] = None, limit: int = 50) -> List[Dict]:
        events = [e for e in self.recent if name is None or e['event'] == name]
        return events[-limit:]

    def _write_entry(self, payload: Dict) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist event log: %s", exc)
