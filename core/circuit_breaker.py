"""
vault-rebalancer Core: Circuit-Breaker Gate

Bounds-checks the raw protocol safety level. Anything the reader reports
outside [0, 3] is treated as EMERGENCY; an unexpected signal is never
interpreted as safe.

Only the EMERGENCY boundary changes loop behavior. CAUTION and STRESS are
enforced on-chain (paused operations) and the loop keeps scoring normally.
"""

import logging

from core.interfaces import CircuitBreakerReader
from core.models import CircuitBreakerLevel

logger = logging.getLogger(__name__)


def coerce_level(raw) -> CircuitBreakerLevel:
    """Map a raw reading to a level, failing safe to EMERGENCY."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Circuit breaker returned non-integer level %r; treating as EMERGENCY", raw)
        return CircuitBreakerLevel.EMERGENCY

    if isinstance(raw, float) and raw != value:
        logger.warning("Circuit breaker returned fractional level %r; treating as EMERGENCY", raw)
        return CircuitBreakerLevel.EMERGENCY

    if value < CircuitBreakerLevel.NORMAL or value > CircuitBreakerLevel.EMERGENCY:
        logger.warning(
            "Circuit breaker returned unexpected level %s; treating as %s",
            value, CircuitBreakerLevel.EMERGENCY.name,
        )
        return CircuitBreakerLevel.EMERGENCY

    return CircuitBreakerLevel(value)


def is_emergency(level: CircuitBreakerLevel) -> bool:
    return level >= CircuitBreakerLevel.EMERGENCY


class CircuitBreakerGate:
    def __init__(self, reader: CircuitBreakerReader):
        self._reader = reader

    def read_level(self) -> CircuitBreakerLevel:
        level = coerce_level(self._reader.read_level())
        if level > CircuitBreakerLevel.NORMAL:
            logger.warning("Circuit breaker active: level=%d (%s)", level, level.name)
        return level

    @staticmethod
    def is_emergency(level: CircuitBreakerLevel) -> bool:
        return is_emergency(level)
