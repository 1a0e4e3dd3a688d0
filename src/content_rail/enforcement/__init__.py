"""
CONTENT RAIL - Enforcement Module

The Access Gateway: automated readers need a valid license.
"""

from .gateway import AccessGateway, AccessDecision, GateDecision, is_automated_agent

__all__ = [
    "AccessGateway",
    "AccessDecision",
    "GateDecision",
    "is_automated_agent",
]
