"""Main entry point when executing quotasync as a package.

This allows running the package using python -m quotasync.
"""

from quotasync.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
