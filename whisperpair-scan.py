#!/usr/bin/env python3
"""Run whisperpair-scan from a source checkout without installing it."""

import sys

from whisperpair_scan.cli import main

if __name__ == "__main__":
    sys.exit(main())
