"""
Management API adapter.
"""
from xenbackup.xenapi.client import NULL_REF, XenApiClient

__all__ = ["NULL_REF", "XenApiClient"]
