"""HTTP surface for the session control plane."""
from .server import ControlPlaneServer

__all__ = ["ControlPlaneServer"]
