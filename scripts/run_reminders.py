#!/usr/bin/env python3
"""
Run a reminder sweep without going through HTTP.

    python scripts/run_reminders.py invoice-reminders
    python scripts/run_reminders.py daily-task-reminders --org acme
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.bizops import create_app
from app.bizops.db import session_scope
from app.bizops.modules.reminders.service import JOBS, run_job


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run a reminder sweep.")
    parser.add_argument("job", choices=sorted(JOBS))
    parser.add_argument("--org", help="organization slug (default: every active organization)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    with app.app_context(), session_scope(app) as s:
        results = run_job(s, args.job, org_slug=args.org)
    print(json.dumps([r.to_dict() for r in results], indent=2), flush=True)
    return 1 if any(r.errors for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
