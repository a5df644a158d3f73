import json
from pathlib import Path
from typing import Dict, Optional
from datetime import datetime, timezone
from threading import Lock
import logging

from ..core.models import ServiceRecord


class DeploymentStateStore:
    """
    Persists the last successful release of every service to disk.

    Storage structure:
    - Single state file: releases.json mapping service name to its record
    """

    def __init__(self, state_dir: str = "./data/deploy_state"):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = self.state_dir / "releases.json"
        self._lock = Lock()
        self.logger = logging.getLogger(__name__)

    def load_records(self) -> Dict[str, ServiceRecord]:
        """Load all release records; an unreadable file yields no records"""
        with self._lock:
            if not self.state_file.exists():
                return {}
            try:
                with open(self.state_file, 'r') as f:
                    data = json.load(f)
                return {
                    name: ServiceRecord.from_dict(record)
                    for name, record in data.get('services', {}).items()
                }
            except (OSError, ValueError, KeyError, TypeError) as e:
                self.logger.error(f"Error reading deployment state {self.state_file}: {e}")
                return {}

    def save_records(self, records: Dict[str, ServiceRecord], run_id: Optional[str] = None):
        """Replace stored records atomically"""
        with self._lock:
            payload = {
                'updated_at': datetime.now(timezone.utc).isoformat(),
                'run_id': run_id,
                'services': {name: record.to_dict() for name, record in sorted(records.items())},
            }
            tmp_file = self.state_file.with_suffix('.json.tmp')
            with open(tmp_file, 'w') as f:
                json.dump(payload, f, indent=2)
            tmp_file.replace(self.state_file)
            self.logger.debug(f"Saved {len(records)} release records")

    def get_record(self, name: str) -> Optional[ServiceRecord]:
        return self.load_records().get(name)
