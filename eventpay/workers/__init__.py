"""Background workers for settlement and notifications."""
from .outbox_publisher import start_outbox_publisher
from .settlement_worker import start_settlement_worker

__all__ = ["start_outbox_publisher", "start_settlement_worker"]
