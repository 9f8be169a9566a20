"""raibid - installs and validates a self-hosted CI stack on a single host."""

__version__ = "0.1.0"
