"""Allow ``python -m lanhub``."""

from .main import main

if __name__ == "__main__":
    main()
