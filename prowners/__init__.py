"""Closed pull request ownership analysis for GitHub organizations."""

__version__ = "0.1.0"
