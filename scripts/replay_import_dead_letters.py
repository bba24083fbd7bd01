import argparse

from app.db import SessionLocal
from app.logging import configure_logging, get_logger
from app.services.crm.imports.dead_letter import list_dead_letters, requeue_dead_letter
from app.services.crm.imports.queue import dispatch_job

logger = get_logger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Requeue dead-lettered history import batches so the import queue retries them."
    )
    parser.add_argument("--connection-id", help="Only replay batches of this connection.")
    parser.add_argument("--limit", type=int, default=100, help="Maximum number of dead letters to replay.")
    parser.add_argument("--attempts", type=int, default=0, help="Attempts for the new jobs (0 = keep previous).")
    parser.add_argument("--dry-run", action="store_true", help="List what would be replayed without writing.")
    args = parser.parse_args()

    configure_logging()
    requeued = []
    db = SessionLocal()
    try:
        dead_letters = list_dead_letters(db, connection_id=args.connection_id, limit=args.limit)
        for dead_letter in dead_letters:
            if args.dry_run:
                print(
                    f"{dead_letter.id} connection={dead_letter.connection_id} "
                    f"batch={dead_letter.batch_index + 1}/{dead_letter.total_batches} "
                    f"attempts={dead_letter.attempts_made}"
                )
                continue
            try:
                job = requeue_dead_letter(db, dead_letter, max_attempts=args.attempts or None)
            except ValueError as exc:
                logger.warning("import_dead_letter_skipped dead_letter_id=%s error=%s", dead_letter.id, exc)
                continue
            requeued.append((job.id, job.priority))
        if not args.dry_run:
            db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    for job_id, priority in requeued:
        dispatch_job(job_id, priority=priority)
    print(f"Found {len(dead_letters)} dead letters, requeued {len(requeued)}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
