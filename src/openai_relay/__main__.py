"""Entry point for running openai-relay directly."""

from .cli import main

if __name__ == "__main__":
    main()
