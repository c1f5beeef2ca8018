"""
clinisync: keeps the clinic's legacy database and the cloud store in sync.
"""

__version__ = "1.0.0"
