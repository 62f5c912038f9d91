"""
FleetDesk - vehicle reservation core: availability, pricing and booking lifecycle.
"""

__version__ = "1.0.0"
