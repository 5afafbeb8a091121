"""
VulnSweep - Background dependency vulnerability scanner

Runs long-lived, resumable, rate-limited vulnerability lookups for a list
of software packages against the NIST NVD and persists progress so scans
survive restarts and can be paused, resumed, or cancelled at any time.

Copyright (c) 2025
Licensed under MIT License
"""

__version__ = "1.0.0"
__author__ = "VulnSweep Team"
__status__ = "Development"
