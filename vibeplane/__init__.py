"""vibeplane: localhost control plane for agent coding sessions."""

__version__ = "0.1.0"
