"""
Tenant Forms Workflow Core
Blueprint registry.
"""
