"""factory-vm package."""

__all__ = [
    "bootstrap",
    "cache",
    "cli",
    "config",
    "constants",
    "credentials",
    "exceptions",
    "guest",
    "host",
    "installer",
    "models",
    "network",
    "orchestrator",
    "profiler",
    "remote",
    "runtime",
    "status",
    "steps",
    "tokens",
    "trust",
    "utils",
]
