"""
Adapters package for the Limits Service.

Contains HTTP client wrappers for external collaborators. Adapters own
their base URLs, retry policy and circuit breaker, and report failures as
return values or shared errors.
"""

from .control_plane_client import ControlPlaneClient

__all__ = [
    "ControlPlaneClient",
]
