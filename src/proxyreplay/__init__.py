"""
ProxyReplay

Replays recorded HTTP/HTTPS/HTTP2 traffic against a proxy under test, or the
origin behind it, reproducing the recorded session timing at a chosen rate.
"""

__version__ = '1.0.0'
