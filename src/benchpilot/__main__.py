"""Allow ``python -m benchpilot``."""

from benchpilot.cli import main

main()
