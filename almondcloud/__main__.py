"""
Entry point for running almondcloud as a module: python -m almondcloud
"""

from almondcloud.cli.commands import app

if __name__ == "__main__":
    app()
