"""Entry point for ``python -m firebase_rtdb``."""

from .cli import main

if __name__ == "__main__":
    main()
