"""
xen-backup: full and differential backup/restore of XenServer VMs.
"""
__version__ = "1.0.0"
