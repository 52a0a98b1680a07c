"""
edutenant - tenant isolation, permission gating and audit trail for a
multi-school SaaS backend.
"""

__version__ = "0.1.0"
