#!/usr/bin/env python3
"""
ProxyReplay Client

Replay recorded traffic against a proxy or origin server.

Examples:
    python3 proxyreplay-client.py run replays/ 127.0.0.1:8080 127.0.0.1:8443
    python3 proxyreplay-client.py run replays/ origin:80 origin:443 --no-proxy --rate 20
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from proxyreplay.cli import main

if __name__ == '__main__':
    sys.exit(main())
