"""Allow running as ``python -m labconnect``."""

from labconnect.cli import main

main()
