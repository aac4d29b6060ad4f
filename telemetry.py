import time
from numbers import Real

from codes import normalize_code
from connection import Connection, broadcast
from logging_config import get_logger
from registry import SessionRegistry
from schemas.messages import telemetry

logger = get_logger(__name__)


def is_valid_openness(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, Real):
        return False
    # NaN and infinities fail the comparison; huge JSON integers compare without float conversion
    return 0 <= value <= 1


def now_ms() -> int:
    return int(time.time() * 1000)


class TelemetryRouter:
    """Forwards mouth-openness samples from a web tracker to the lens hosts of its session.

    Delivery is best-effort: out-of-range samples, samples from a connection
    that does not hold the code, and sends to closed sockets are all dropped.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def route(self, sender: Connection, full_code: str, openness_value) -> int:
        if not is_valid_openness(openness_value):
            logger.debug(f"Dropping out-of-range telemetry for {full_code}: {openness_value!r}")
            return 0
        session = await self.registry.resolve_claimant(full_code, sender)
        if session is None:
            logger.debug(f"Dropping telemetry for {full_code}: sender {sender.id} does not hold the code")
            return 0
        message = telemetry(normalize_code(full_code), float(openness_value), now_ms())
        targets = [conn for conn in session.host_connections() if conn is not sender]
        delivered = await broadcast(targets, message)
        logger.debug(f"Telemetry {full_code}={openness_value} delivered to {delivered}/{len(targets)} hosts")
        return delivered
