"""masterchef control-plane data layer."""

__version__ = "0.1.0"

__all__ = ["__version__"]
