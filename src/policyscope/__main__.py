"""Module entrypoint for `python -m policyscope`.

Defers to the Typer app so behaviour matches the `policyscope` console script.
"""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    main()
