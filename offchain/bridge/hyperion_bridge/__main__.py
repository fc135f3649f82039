"""
Entry point for running the bridge as a module.

Usage:
    python -m hyperion_bridge
"""

from hyperion_bridge.cli import main

if __name__ == "__main__":
    main()
