"""Load-test harness for the m3w media library service."""

__version__ = "0.1.0"
