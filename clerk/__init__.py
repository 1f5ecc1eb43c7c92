"""clerk package.

Keeps a local double-entry ledger in sync with Plaid.  See ``sync.py`` for
the synchronization engine and ``cli.py`` for the command-line entry point.
"""

__version__ = "0.1.0"
