"""Allow ``python3 -m nvidia_optimizer``."""

from nvidia_optimizer.cli import main

main()
