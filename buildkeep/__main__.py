"""Allow running buildkeep as a module: python -m buildkeep."""

from buildkeep.cli import app

app()
