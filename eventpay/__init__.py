"""Payment settlement and creator-payout engine for the event-ticketing marketplace."""

__version__ = "0.1.0"
