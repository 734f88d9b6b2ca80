"""
IPTV Relay
Playlist parsing and a cross-origin relay for live streams,
EPG documents and downloadable files.
"""

__version__ = "1.0.0"
__description__ = "IPTV playlist parser and cross-origin streaming relay"
