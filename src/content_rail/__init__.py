"""
CONTENT RAIL
Content licensing and payment orchestration for autonomous agents.

Content owners register content behind a price; agents pay owners with
instant stablecoin transfers and receive 30-day licenses that gate access.
"""

__version__ = "1.0.0"
