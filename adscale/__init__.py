"""Meta ads insights sync and rule-based budget scale suggestions."""

__version__ = "0.1.0"
