"""Entry point for running parley as a module: python -m parley."""

from parley.cli.commands import app

if __name__ == "__main__":
    app()
