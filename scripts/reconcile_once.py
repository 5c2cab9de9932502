import json
import logging
import sys

from matchflow.workers.reconciler import get_reconciler


def main() -> int:
    if len(sys.argv) > 2 or (len(sys.argv) == 2 and sys.argv[1] != "--status"):
        print("Usage: python scripts/reconcile_once.py [--status]")
        return 2

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    reconciler = get_reconciler()
    try:
        if len(sys.argv) == 1:
            if not reconciler.run_tick():
                print("Reconcile tick skipped: another tick is running")
                return 1
        print(json.dumps(reconciler.status(), indent=2, default=str))
    finally:
        reconciler.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
