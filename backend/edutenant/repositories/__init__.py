"""Repositories for tenant-scoped data access."""

from edutenant.repositories.base_repo import TenantScopedRepository

__all__ = ["TenantScopedRepository"]
