#!/usr/bin/env python3
"""
iptv-relay - Main Entry Point
IPTV playlist parser and cross-origin relay for live streams, EPG documents and downloads.
"""

import uvicorn
import logging
import sys
import os
import asyncio

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

# Import configs AFTER setting up the path
from config import settings, VERSION


def main():
    """Main function to start the iptv-relay server."""

    # Try to use uvloop for better async performance
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        use_uvloop = True
    except ImportError:
        use_uvloop = False

    # Configure logging
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger = logging.getLogger(__name__)
    logger.info("="*60)
    logger.info(
        f"⚡️ Starting iptv-relay v{VERSION} on {settings.HOST}:{settings.PORT}")
    logger.info("="*60)
    logger.info(f"ℹ️  Log level set to: {settings.LOG_LEVEL}")
    if use_uvloop:
        logger.info("✅ Using uvloop for optimized async I/O performance")
    else:
        logger.info(
            "✅ Using standard asyncio (install uvloop for better performance)")

    logger.info(f"✅ Client identifier: {settings.USER_AGENT}")
    logger.info(
        f"✅ Timeouts: playlist {settings.PLAYLIST_FETCH_TIMEOUT:g}s, stream {settings.STREAM_TIMEOUT:g}s, "
        f"download {settings.DOWNLOAD_TIMEOUT:g}s, epg {settings.EPG_FETCH_TIMEOUT:g}s, check {settings.CHECK_TIMEOUT:g}s")
    logger.info(
        f"✅ Rate limit: {settings.RATE_LIMIT_MAX} requests per {settings.RATE_LIMIT_WINDOW:g}s per client")
    logger.info(f"✅ Allowed origins: {', '.join(settings.allowed_origins)}")

    if settings.RELOAD:
        logger.info("🔄 Auto-reload is enabled.")

    # Start the server using settings from the config object
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        loop="uvloop" if use_uvloop and not settings.RELOAD else "asyncio"
    )


if __name__ == "__main__":
    main()
