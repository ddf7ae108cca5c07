"""Build storage and execution module.

This module handles:
- Build records and their on-disk layout
- The build record store and its in-memory cache
- Named pointers to notable builds
- Running build steps and archiving artifacts
"""

from buildkeep.builds.records import Build, BuildKey, BuildRecord, ProjectLocation

__all__ = ["Build", "BuildKey", "BuildRecord", "ProjectLocation"]

# Scheduling lives in buildkeep.builds.service, which depends on
# buildkeep.runtime and is not imported here.
