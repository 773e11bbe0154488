"""
HTTP API for the reconciliation service.
"""
