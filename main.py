#!/usr/bin/env python3
"""
singnet - sing-box VPN manager
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from singnet.cli.interface import main

if __name__ == "__main__":
    sys.exit(main())
