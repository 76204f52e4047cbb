"""Webhook deployer.

A small service that listens for repository push webhooks, pulls the
latest source, rebuilds the web application when needed and restarts it.
Pipeline runs are serialized so overlapping pushes never race each other.
"""

__version__ = "0.1.0"
