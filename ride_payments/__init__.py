"""Mobile-money payment orchestration and reconciliation for ride bookings."""

__version__ = "1.0.0"
