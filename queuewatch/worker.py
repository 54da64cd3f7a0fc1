import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from typing import Optional

from .db import connect_db
from .errors import StoreUnavailable
from .repository import claim_one, complete, fail, get_config, restart_requested_at
from .utils import utcnow

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping workers", signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            pass


def safe_run_command(cmd: str, timeout: int = 10):
    """Run `cmd`; return (exit code, error text or None)."""
    try:
        args = shlex.split(cmd, posix=(os.name != "nt"))
        result = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return 124, f"timed out after {timeout}s"  # Common exit code for timeout
    except FileNotFoundError:
        return 127, "command not found"
    except (OSError, ValueError) as e:
        return 1, str(e)

    if result.stdout:
        logger.debug("stdout: %s", result.stdout.strip())
    if result.returncode != 0:
        return result.returncode, (result.stderr or "").strip() or f"exit_code={result.returncode}"
    return 0, None


def restart_due(conn, started_at) -> bool:
    requested = restart_requested_at(conn)
    return requested is not None and requested > started_at


def worker_loop(name: str, queue: Optional[str] = None, db: Optional[str] = None,
                poll_interval: float = 0.5, once: bool = False):
    conn = connect_db(db)
    started_at = utcnow()
    try:
        cfg = get_config(conn)
        timeout = int(cfg.get("timeout_seconds", "20"))
    except (StoreUnavailable, ValueError) as e:
        logger.warning("[%s] could not load config (%s); using defaults.", name, e)
        timeout = 20

    try:
        while not _stop.is_set():
            try:
                if restart_due(conn, started_at):
                    logger.info("[%s] restart requested; exiting so the supervisor restarts us", name)
                    break

                job = claim_one(conn, worker_name=name, queue=queue)
                if not job:
                    if once:
                        break
                    time.sleep(poll_interval)
                    continue

                logger.info("[%s] Executing job %s [%s] -> %s", name, job.id, job.queue, job.command)
                rc, error = safe_run_command(job.command, timeout=timeout)

                if rc == 0:
                    complete(conn, job.id)
                    logger.info("[%s] Job %s completed.", name, job.id)
                else:
                    fail(conn, job.id, error)
                    logger.warning("[%s] Job %s failed (code %s): %s", name, job.id, rc, error)

            except StoreUnavailable as e:
                logger.error("[%s] job store error: %s", name, e)
                time.sleep(1)
    finally:
        conn.close()
        logger.info("[%s] Worker stopped.", name)


def start_workers(count: int, queue: Optional[str] = None, db: Optional[str] = None):
    """Start multiple worker threads."""
    setup_signal_handlers()
    threads = []

    for i in range(count):
        t = threading.Thread(target=worker_loop, args=(f"worker-{i+1}", queue, db), daemon=True)
        t.start()
        threads.append(t)
        logger.info("Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        _stop.set()
        for t in threads:
            t.join()
        logger.info("All workers stopped gracefully.")
