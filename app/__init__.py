"""
                Dine-In & Takeaway Order Tracking

Async backend for restaurant checkout: a compare-and-set order state
machine, per-order QR tokens for scan-to-verify, restaurant/customer
notification channels and a derived customer loyalty tier.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
