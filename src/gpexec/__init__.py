"""
gpexec - job dispatch, command-line templating and execution tracking
for analysis servers.
"""

__version__ = "0.1.0"
