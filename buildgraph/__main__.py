"""Entry point for ``python -m buildgraph``."""

from buildgraph.cli import app

if __name__ == "__main__":
    app()
