"""Analytics population pipeline for public procurement spending data"""

__version__ = "0.4.0"
