"""Courier: reliable delivery of settings requests to a remote endpoint."""

__version__ = "1.0.0"
