"""
SlipSight CLI Entry Point

Allows running the package as a module: python -m slipsight
"""

from slipsight.cli import main

if __name__ == "__main__":
    main()
