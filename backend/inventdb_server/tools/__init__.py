"""
Command-line tools for InventDB.

- backup_cli: Offline snapshot management (inventdb-backup)
"""
