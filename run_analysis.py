"""Convenience shim to run the pull request ownership analysis."""

from __future__ import annotations

import sys

from prowners.pipeline.runner import main as analysis_main


if __name__ == "__main__":
    sys.exit(analysis_main(sys.argv[1:]))
