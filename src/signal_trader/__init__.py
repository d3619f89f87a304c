"""Signal Trader - multi-module crypto futures bias and position engine."""

__version__ = "0.1.0"
