"""
Persistence for audits, chunk tasks and findings.
"""
