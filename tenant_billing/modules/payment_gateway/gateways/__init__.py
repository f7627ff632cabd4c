"""Payment gateway implementations.

Contains implementations for Midtrans and Tripay.
"""

from .midtrans import MidtransGateway
from .tripay import TripayGateway

__all__ = ["MidtransGateway", "TripayGateway"]
