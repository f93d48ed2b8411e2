"""Run a benchmark while sampling thermal sensors into a CSV trace."""

__version__ = "0.1.0"
