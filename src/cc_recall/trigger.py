"""Background indexing for the post-session hook.

The hook must return immediately, so the session is indexed by a detached
child process that writes to its own log file instead of the caller's
terminal.
"""

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cc_recall.config import ARCHIVE_DIR_ENV, CONFIG_DIR_ENV, Config

logger = logging.getLogger(__name__)

TRIGGER_LOG = "trigger.log"


@dataclass
class Submission:
    session_id: str
    pid: int
    log_file: Path


def index_command(session_id: str, config: Config) -> list[str]:
    """Command line for indexing one session in a fresh interpreter."""
    cmd = [sys.executable, "-m", "cc_recall.cli", "index-session", session_id, "--log-file"]
    cmd.append(str(config.log_dir / TRIGGER_LOG))
    if not config.summaries:
        cmd.append("--no-summaries")
    return cmd


def submit_session_index(session_id: str, config: Config) -> Submission:
    """Start indexing ``session_id`` in a detached process and return without waiting."""
    config.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = config.log_dir / TRIGGER_LOG

    env = dict(os.environ)
    env[CONFIG_DIR_ENV] = str(config.root_dir)
    if config.archive_override is not None:
        env[ARCHIVE_DIR_ENV] = str(config.archive_override)

    with open(log_file, "a", encoding="utf-8") as log:
        log.write(f"{datetime.now(tz=timezone.utc).isoformat()} submit {session_id}\n")
        log.flush()
        proc = subprocess.Popen(
            index_command(session_id, config),
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=log,
            env=env,
            start_new_session=True,
        )

    logger.info("Submitted background indexing of %s (pid %d)", session_id, proc.pid)
    return Submission(session_id=session_id, pid=proc.pid, log_file=log_file)
