"""
Entry point for `python -m reelcut`.

Routes to the CLI by default. The server has its own module entry:
  python -m reelcut           -> CLI (export, preview, info, tiers)
  python -m reelcut.server    -> HTTP export service
"""

from reelcut.cli import main

main()
