#!/usr/bin/env python3
"""cLLMHub - entry point for `python -m cllmhub`."""

from .cli import main


if __name__ == "__main__":
    main()
