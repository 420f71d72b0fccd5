"""Allow ``python -m tokscan``."""

from tokscan.cli import app

app()
