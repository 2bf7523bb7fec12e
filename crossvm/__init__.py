"""Provision and drive short-lived BSD guests on CI runner hosts."""

__version__ = '0.1.0'
