"""
Allow `python -m prepbuild`.
"""
import sys

from prepbuild.cli import main

if __name__ == "__main__":
    sys.exit(main())
