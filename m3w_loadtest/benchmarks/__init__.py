"""
Upload benchmark matrix for the m3w service.

Sweeps upload file size against concurrency, samples the service container
during each case and reports how peak memory and CPU scale along both axes.
"""

from .main import main

__all__ = ["main"]
