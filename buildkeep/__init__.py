"""buildkeep - Build bookkeeping for a continuous-integration server.

This package provides the storage core of a CI server: per-project build
records on disk, named build pointers, workspace arbitration between polls
and builds, and the cascades that keep them consistent when projects are
renamed, moved or deleted.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
