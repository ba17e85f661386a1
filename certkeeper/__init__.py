"""certkeeper: placeholder-first TLS certificate provisioning for nginx."""

__version__ = "1.0.0"
