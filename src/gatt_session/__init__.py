"""
GATT characteristic session client: service discovery, one notification
subscription at a time, and decoding of characteristic values (Heart Rate
Measurement RR intervals in particular).
"""

__version__ = "0.1.0"
