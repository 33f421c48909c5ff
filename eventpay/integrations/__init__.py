"""Payment gateway integrations."""
from eventpay.integrations.base import GatewayAdapter, GatewayRegistry
from eventpay.integrations.disbursement import DisbursementRail, RailRouter

__all__ = ["GatewayAdapter", "GatewayRegistry", "DisbursementRail", "RailRouter"]
