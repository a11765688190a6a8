"""Entry point for ``python -m twofactor``."""

from twofactor.cli import main

if __name__ == "__main__":
    main()
