"""Allow ``python -m allotment``."""

from allotment.cli.app import app

app()
