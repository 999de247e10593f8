"""Self-update controller for Aether deployments.

Pulls new source inside a sandbox runner container, rebuilds and swaps the
deployment container, runs migrations, validates health and rolls back to
the previous commit when any step fails.
"""

__version__ = "0.1.0"
