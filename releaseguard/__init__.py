"""releaseguard: deployment health verification and automatic rollback."""

__version__ = "0.1.0"
