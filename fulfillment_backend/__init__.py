"""
Storefront fulfillment backend.

Turns paid orders into Shiprocket shipments.
"""

__version__ = "1.0.0"
