"""Module entrypoint: ``python -m virtlab``."""

from virtlab import cli

raise SystemExit(cli.main())
