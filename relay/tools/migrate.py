from __future__ import annotations
import glob
import structlog
from relay.infra.db import Postgres
from relay.infra.logging import configure_logging

log = structlog.get_logger(__name__)

def main(pattern: str = "db/migrations/*.sql"):
    configure_logging()
    db = Postgres()
    try:
        for f in sorted(glob.glob(pattern)):
            with open(f, "r", encoding="utf-8") as fh:
                sql = fh.read()
            if sql.strip():
                db.execute(sql)
                log.info("migration_applied", file=f)
    finally:
        db.close()
    log.info("migrations_done")

if __name__ == "__main__":
    main()
