"""
Delivery Rotation - provider rotation protocol for a construction marketplace

When a builder asks for a delivery, the nearest well-rated provider is
contacted; on a reject or a missed deadline the next one is, until someone
accepts or the attempt budget runs out. Every step and every driver-contact
disclosure is recorded.
"""

from delivery_rotation.service import DeliveryRotation

__version__ = "0.1.0"
__all__ = ["DeliveryRotation", "__version__"]
