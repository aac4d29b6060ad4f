from connection import Connection, HostRole, WebRole
from logging_config import get_logger
from registry import SessionRegistry

logger = get_logger(__name__)


class DisconnectReconciler:
    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def reconcile(self, connection: Connection) -> bool:
        """Remove a closed connection from the registry. Safe to call more than once."""
        role = connection.role
        if isinstance(role, HostRole):
            removed = await self.registry.remove_host(role.session_key, role.connection_id, connection)
        elif isinstance(role, WebRole):
            removed = await self.registry.remove_web(role.full_code, connection)
        else:
            logger.debug(f"Unclassified connection {connection.id} closed, nothing to clean up")
            return False
        logger.debug(f"Reconciled connection {connection.id} ({role}): removed={removed}")
        return removed
