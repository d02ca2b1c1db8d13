"""
setbreak - Main Entry Point

Example usage:
    python main.py add --band "Phish" --date 1997-11-22 tapes/ph97-11-22/
    python main.py analyze -j 8
    python main.py --config config/config.yaml calibrate
"""

from setbreak.cli import main


if __name__ == "__main__":
    main()
