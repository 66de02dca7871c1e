"""Database models for ShelfSense"""

from shelfsense.models.base import (
    Base,
    SchemaCapabilities,
    create_session_factory,
    init_db,
    probe_capabilities,
)

from shelfsense.models.store import (
    Store,
    Order,
    OrderItem,
    VariantSnapshot,
    SyncState,
)

__all__ = [
    "Base",
    "SchemaCapabilities",
    "create_session_factory",
    "init_db",
    "probe_capabilities",
    "Store",
    "Order",
    "OrderItem",
    "VariantSnapshot",
    "SyncState",
]
