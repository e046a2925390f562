"""Application package initialization.

Having this file ensures the 'billing_sync' directory is recognized as a
standard Python package during test discovery and installation.
"""

__all__: list[str] = []
