"""Entry point for running rotaguard as a module."""

from rotaguard.cli.commands import app

if __name__ == "__main__":
    app()
