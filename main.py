#!/usr/bin/env python3
"""
Doorbell SIP Bridge - local entry point.
Configuration comes from the environment (or a .env file).
"""

from doorbell_bridge.main import main

if __name__ == "__main__":
    main()
