"""
Binload Module Entry Point
===========================

Allows running the CLI via: python -m binload
"""

from binload.cli import main

if __name__ == "__main__":
    main()
