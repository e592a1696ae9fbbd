"""Module entrypoint for `python -m displaysupervisor`."""

try:
    from .cli import run
except ImportError:
    # runpy.run_path executes this file without a parent package.
    from displaysupervisor.cli import run


if __name__ == "__main__":
    raise SystemExit(run())
