"""Automated CI failure remediation."""

__version__ = "0.1.0"
