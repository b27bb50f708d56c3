"""Module entrypoint so `python -m corems_migrations` works when installed."""

from __future__ import annotations

import sys


def _print_install_help(missing: str) -> None:
    message = (
        f"❌ Missing dependency '{missing}'. Install the migration runner into an active virtualenv first:\n\n"
        "    pip install -e .\n"
    )
    sys.stderr.write(message + "\n")
    sys.exit(1)


def main() -> None:
    try:
        from corems_migrations.cli import app  # type: ignore
    except ModuleNotFoundError as exc:
        missing = exc.name or "corems_migrations dependencies"
        _print_install_help(missing)

    app()


if __name__ == "__main__":
    main()
