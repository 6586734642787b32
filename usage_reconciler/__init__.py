"""
Usage Reconciler.

Turns raw usage and invoice payloads from a coding-assistant backend into
a normalized accounting snapshot.
"""

__version__ = "0.1.0"
