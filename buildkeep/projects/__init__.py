"""Project management module.

This module handles:
- Folder and project models
- Project definitions (YAML/JSON import and export)
- Mapping projects to their directories
- Delete, rename and move cascades
"""

from buildkeep.projects.models import Folder, Project
from buildkeep.projects.schema import ProjectSchema

__all__ = ["Folder", "Project", "ProjectSchema"]
