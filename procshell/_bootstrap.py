"""Entry point of a child started by `Shell.fn`: ``python -m procshell._bootstrap``.

Nothing in the package imports this module, so running it with ``-m`` never
finds it already loaded. The child state lives in `procshell.child`.
"""
import sys

from procshell.child import main

if __name__ == "__main__":
    sys.exit(main())
