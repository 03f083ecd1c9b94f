"""Module entrypoint for ``python -m wavefront``.

A thin wrapper around :func:`wavefront.cli.main`: argument parsing, plan execution and
rollback all live in the CLI module, and its return code becomes the process exit status
(0 success, 1 failed plan, 2 rejected plan or configuration).
"""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
