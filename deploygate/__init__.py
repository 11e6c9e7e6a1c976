"""Deployment management gateway over GitOps controllers and package managers."""

__version__ = "0.1.0"
