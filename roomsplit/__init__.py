"""roomsplit: billing proration and reconciliation for shared apartments."""

__version__ = "0.1.0"
