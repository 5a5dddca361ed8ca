"""
sherry daemon entry point.

Usage:
    python -m sherry_sync

Environment Variables:
    SHERRY_CONFIG_DIR: Configuration directory (default: ~/.sherry)
    SHERRY_API_URL: Overrides api_url from config.json
    SHERRY_LOG_LEVEL: Logging level (default: INFO)
    SHERRY_DEBOUNCE_MS: Quiet period per path before syncing (default: 500)
    SHERRY_REMOTE_POLL_INTERVAL_S: Seconds between remote listings while watching (default: 30)
"""

import asyncio
import sys

from sherry_sync.daemon import main


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🔌 sherry daemon shutting down...")
        sys.exit(0)
    except Exception as e:
        print(f"❌ sherry daemon error: {e}", file=sys.stderr)
        sys.exit(1)
