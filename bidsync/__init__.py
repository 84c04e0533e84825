"""
bidsync: keeps one profitable, top-of-book collection bid per (collection, marketplace).
"""

__version__ = "0.1.0"
