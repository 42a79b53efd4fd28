"""
Storage destinations for database dumps.
"""

from .base import BackupDestination
from .local import LocalDestination
from .registry import DESTINATION_TYPES, DestinationRegistry, get_registry, parse_destination_config
from .s3 import S3Destination
from .sftp import SftpDestination

__all__ = [
    'BackupDestination',
    'LocalDestination',
    'S3Destination',
    'SftpDestination',
    'DestinationRegistry',
    'DESTINATION_TYPES',
    'get_registry',
    'parse_destination_config',
]
