"""Admin console core for the Machines API: gateway, client SDK, orchestrator and status feed."""

__version__ = "1.0.0"
