"""Allows running ropelog as a module: python -m src.cli"""

from src.cli import app

if __name__ == "__main__":
    app()
