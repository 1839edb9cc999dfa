"""Thin shim for IDEs and direct execution."""

from rss_subscriptions.cli import main

if __name__ == "__main__":
    import sys

    # Default to debug logging when running from a checkout; an explicit
    # --log-level on the command line still wins.
    if not any(arg.startswith("--log-level") for arg in sys.argv):
        sys.argv[1:1] = ["--log-level", "DEBUG"]

    sys.exit(main())
