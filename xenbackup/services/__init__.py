"""
Backup, restore and transfer services.
"""
