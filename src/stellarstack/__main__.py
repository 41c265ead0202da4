"""
Allow running stellarstack as a module: python -m stellarstack
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
