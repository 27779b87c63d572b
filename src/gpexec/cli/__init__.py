"""Command-line interface (``gpexec``)."""
