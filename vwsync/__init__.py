"""Vaultwarden to Kubernetes Secret synchronisation."""

__version__ = "0.1.0"
