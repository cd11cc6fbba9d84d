"""Entry point for `python -m iterwork`."""

from __future__ import annotations

from iterwork.cli import main

raise SystemExit(main())
