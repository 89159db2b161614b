"""
Shared job runner for scheduled billing jobs.
Used by server (scheduler), the cron trigger routes and the command line.
Each run_* returns a dict with "message" and "count" (workspaces affected).
"""
import asyncio
import logging
import sys

logger = logging.getLogger(__name__)


async def run_grace_period_sweep():
    try:
        from services.grace_period import run_grace_period_expiry_job
        count = await run_grace_period_expiry_job()
        logger.info(f"Grace period sweep job completed: {count} workspaces downgraded")
        return {"message": f"Grace period expired for {count} workspace(s)", "count": count}
    except Exception as e:
        logger.error(f"Grace period sweep job failed: {e}")
        raise


async def run_pending_downgrades():
    try:
        from services.scheduled_downgrade import apply_pending_downgrades
        count = await apply_pending_downgrades()
        logger.info(f"Pending downgrades job completed: {count} workspaces updated")
        return {"message": f"Scheduled downgrades applied: {count}", "count": count}
    except Exception as e:
        logger.error(f"Pending downgrades job failed: {e}")
        raise


JOB_RUNNERS = {
    "grace_period_sweep": run_grace_period_sweep,
    "pending_downgrades": run_pending_downgrades,
}


async def _run_from_cli(job_name: str):
    from database import database
    await database.connect()
    try:
        return await JOB_RUNNERS[job_name]()
    finally:
        await database.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if len(sys.argv) != 2 or sys.argv[1] not in JOB_RUNNERS:
        print(f"Usage: python job_runner.py <{'|'.join(JOB_RUNNERS)}>")
        sys.exit(2)
    result = asyncio.run(_run_from_cli(sys.argv[1]))
    print(result["message"])
