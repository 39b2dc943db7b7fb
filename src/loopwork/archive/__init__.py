from .archival import DEFAULT_KEEP, ArchivedRun, ArchiveResult, ArchiveService, build_summary

__all__ = ["DEFAULT_KEEP", "ArchiveResult", "ArchiveService", "ArchivedRun", "build_summary"]
