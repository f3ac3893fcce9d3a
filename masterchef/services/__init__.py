"""Service implementations for the masterchef control plane.

Import service modules directly where needed.
"""

__all__ = []
