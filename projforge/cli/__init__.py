"""Command-line entry points. Not imported by the library packages."""
