"""Liveness heartbeat file consumed by external process supervision."""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_PATH = "/tmp/vault-rebalancer-heartbeat"


class HeartbeatWriter:
    """
    Writes the current time (epoch milliseconds) to a well-known path.

    The write goes through a temp file and ``os.replace`` so a reader never
    sees a half-written value. Nothing in the loop reads the file back.
    """

    def __init__(self, path: str = DEFAULT_HEARTBEAT_PATH):
        self.path = Path(path)
        self.last_written: Optional[datetime] = None

    def write(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        payload = str(int(now.timestamp() * 1000))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        self.last_written = now

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.last_written is None:
            return None
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.last_written).total_seconds())


__all__ = ["HeartbeatWriter", "DEFAULT_HEARTBEAT_PATH"]
