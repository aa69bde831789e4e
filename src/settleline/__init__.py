"""settleline: task timing and dependency propagation for fund timelines."""

__version__ = "0.1.0"
