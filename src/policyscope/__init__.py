"""Targeting and compliance audit for device-management policies."""

__version__ = "0.1.0"
