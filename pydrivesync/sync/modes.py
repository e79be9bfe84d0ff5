"""Sync direction definitions."""

from enum import Enum


class SyncDirection(str, Enum):
    """Direction of a sync run.

    The source side is authoritative; the destination side is made to match
    it. Extraneous cleanup always happens on the destination side.
    """

    UPLOAD = "upload"
    """Local directory is the source, remote folder the destination"""

    DOWNLOAD = "download"
    """Remote folder is the source, local directory the destination"""

    @property
    def source_is_local(self) -> bool:
        return self == SyncDirection.UPLOAD

    @property
    def destination_is_local(self) -> bool:
        return self == SyncDirection.DOWNLOAD

