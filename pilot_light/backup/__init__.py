"""Scheduled table backups and their job metadata."""

from .backup_manager import BackupJobStatus, BackupManager, BackupMetadata, BackupStatus, BackupType

__all__ = ['BackupJobStatus', 'BackupManager', 'BackupMetadata', 'BackupStatus', 'BackupType']
