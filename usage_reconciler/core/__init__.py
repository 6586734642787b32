"""
Core modules for Usage Reconciler.

This package contains billing period arithmetic, invoice line parsing,
aggregation, team membership resolution and spend reconciliation.
"""
