#!/usr/bin/env python3
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging

from gfs_data import build_services, recent_cycles


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    cache, pipeline, scheduler, _query = build_services()
    now = datetime.now(timezone.utc)

    before = cache.list_cycles()
    results = scheduler.refresh_once()

    rows = []
    for cycle in recent_cycles(now):
        rows.append(
            {
                "timestamp": cycle.timestamp,
                "state": results.get(cycle.timestamp, pipeline.state(cycle)).value,
                "cached_before": cycle in before,
            }
        )
    evicted = sorted(c.timestamp for c in before - cache.list_cycles())
    print(json.dumps({"cycles": rows, "evicted": evicted}, indent=2))


if __name__ == "__main__":
    main()
